"""
Policy Rule Codec

Converts between casbin policy lines (a ptype tag plus an ordered list of
values) and the fixed seven-field documents stored in MongoDB.

This module is part of MDB_CASBIN_ADAPTER.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields
from typing import Any

from .constants import MAX_RULE_FIELDS, PTYPE_FIELD, VALUE_FIELDS
from .exceptions import FieldOverflowError, QueryError


@dataclass(frozen=True)
class CasbinRule:
    """
    A single policy rule as persisted.

    Values fill v0..v5 left to right; unused trailing positions hold "".
    Two rules are the same document when ptype and all six values are equal.

    Example:
        rule = CasbinRule.from_policy("p", ["alice", "data1", "read"])
        rule.to_document()
        # {"ptype": "p", "v0": "alice", "v1": "data1", "v2": "read",
        #  "v3": "", "v4": "", "v5": ""}
    """

    ptype: str
    v0: str = ""
    v1: str = ""
    v2: str = ""
    v3: str = ""
    v4: str = ""
    v5: str = ""

    @classmethod
    def from_policy(cls, ptype: str, rule: Sequence[str]) -> "CasbinRule":
        """
        Encode a policy line.

        Args:
            ptype: Rule-type tag ("p", "g", "g2", ...)
            rule: Ordered rule values (subject, object, action, ...)

        Returns:
            CasbinRule with missing trailing positions left empty

        Raises:
            FieldOverflowError: If the rule has more than six values
        """
        values = list(rule)
        if len(values) > MAX_RULE_FIELDS:
            raise FieldOverflowError(
                f"Policy rule has {len(values)} values; at most {MAX_RULE_FIELDS} can be stored",
                fields=values,
                context={"ptype": ptype},
            )
        padded = values + [""] * (MAX_RULE_FIELDS - len(values))
        return cls(ptype, *padded)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "CasbinRule":
        """
        Decode a stored document.

        Unknown keys (including _id) are ignored and missing value fields are
        read as empty.

        Raises:
            QueryError: If the document does not have the policy rule shape
        """
        ptype = doc.get(PTYPE_FIELD)
        if not isinstance(ptype, str):
            raise QueryError(
                "Stored document has no string 'ptype' field",
                context={"document_id": doc.get("_id")},
            )
        values = []
        for name in VALUE_FIELDS:
            value = doc.get(name)
            if value is None:
                value = ""
            elif not isinstance(value, str):
                raise QueryError(
                    f"Stored document field '{name}' is not a string",
                    context={"document_id": doc.get("_id"), "field": name},
                )
            values.append(value)
        return cls(ptype, *values)

    @property
    def values(self) -> tuple[str, ...]:
        """All six positional values, empty ones included."""
        return (self.v0, self.v1, self.v2, self.v3, self.v4, self.v5)

    @property
    def section(self) -> str:
        """Policy section, the first character of ptype."""
        return self.ptype[:1]

    @property
    def policy(self) -> list[str]:
        """Rule values up to, not including, the first empty one."""
        tokens = []
        for value in self.values:
            if not value:
                break
            tokens.append(value)
        return tokens

    def to_document(self) -> dict[str, str]:
        """Document for MongoDB, always with all seven fields."""
        doc = {PTYPE_FIELD: self.ptype}
        doc.update(zip(VALUE_FIELDS, self.values))
        return doc


def build_selector(ptype: str, field_index: int, field_values: Sequence[str]) -> dict[str, str]:
    """
    Build a partial-match selector for filtered removes and updates.

    Each non-empty value constrains the field at position field_index + i;
    empty values mean "any value" and are left out.

    Args:
        ptype: Rule-type tag, always matched exactly
        field_index: Position of the first supplied value
        field_values: Values for consecutive positions starting at field_index

    Raises:
        FieldOverflowError: If the values reach outside v0..v5
    """
    values = list(field_values)
    if field_index < 0 or field_index + len(values) > MAX_RULE_FIELDS:
        raise FieldOverflowError(
            f"Selector positions {field_index}..{field_index + len(values) - 1} "
            f"are outside v0..v{MAX_RULE_FIELDS - 1}",
            fields=values,
            context={"ptype": ptype, "field_index": field_index},
        )
    selector = {PTYPE_FIELD: ptype}
    for offset, value in enumerate(values):
        if value:
            selector[VALUE_FIELDS[field_index + offset]] = value
    return selector


@dataclass
class Filter:
    """
    Structured criteria for filtered policy loading.

    Each attribute maps to a stored field and takes a list of accepted values.

    Note:
        - Empty lists mean no filtering on that attribute
        - Non-empty lists create an "$in" filter for that attribute
        - All non-empty filters are combined with AND logic
    """

    ptype: list[str] = field(default_factory=list)
    v0: list[str] = field(default_factory=list)
    v1: list[str] = field(default_factory=list)
    v2: list[str] = field(default_factory=list)
    v3: list[str] = field(default_factory=list)
    v4: list[str] = field(default_factory=list)
    v5: list[str] = field(default_factory=list)

    def to_query(self) -> dict[str, Any]:
        """MongoDB selector for this filter."""
        query: dict[str, Any] = {}
        for f in fields(self):
            accepted = getattr(self, f.name)
            if accepted:
                query[f.name] = {"$in": list(accepted)}
        return query


def filter_to_query(filter: Any) -> dict[str, Any]:
    """
    Turn a load filter into a MongoDB selector.

    Accepts a Filter, any object exposing to_query(), or a raw mapping, which
    is passed through untouched.
    """
    if isinstance(filter, Mapping):
        return dict(filter)
    to_query = getattr(filter, "to_query", None)
    if callable(to_query):
        return to_query()
    raise TypeError(
        f"Unsupported policy filter type {type(filter).__name__}; "
        "expected a mapping or an object with to_query()"
    )
