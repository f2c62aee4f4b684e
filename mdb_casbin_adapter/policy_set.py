"""
In-memory policy set access.

The enforcer owns the policy set; the adapter only reads it on save and
appends to it on load. Two shapes are supported:

- a casbin ``Model`` (``model.model[sec][ptype].policy``)
- a plain nested mapping (``{"p": {"p": [["alice", "data1", "read"]]}}``)
"""

import logging
from collections.abc import Iterator, Mapping, MutableMapping, Sequence
from typing import Any

from .rule import CasbinRule

logger = logging.getLogger(__name__)


def _sections(model: Any) -> Mapping[str, Any]:
    inner = getattr(model, "model", None)
    if isinstance(inner, Mapping):
        return inner
    if isinstance(model, Mapping):
        return model
    raise TypeError(
        f"Unsupported policy model type {type(model).__name__}; "
        "expected a casbin Model or a mapping of sections"
    )


def _rules_of(entry: Any) -> list[list[str]]:
    # casbin assertions keep their rules in .policy, plain mappings hold the list itself
    policy = getattr(entry, "policy", None)
    if policy is not None:
        return policy
    return entry


def iter_policy_lines(
    model: Any, sections: Sequence[str]
) -> Iterator[tuple[str, list[str]]]:
    """
    Yield (ptype, rule) for every rule under the given sections.

    Sections missing from the model are skipped.
    """
    all_sections = _sections(model)
    for sec in sections:
        by_ptype = all_sections.get(sec)
        if not by_ptype:
            continue
        for ptype, entry in by_ptype.items():
            for rule in _rules_of(entry):
                yield ptype, list(rule)


def load_policy_line(rule: CasbinRule, model: Any) -> bool:
    """
    Append a decoded rule to the model.

    A casbin Model only receives rules for sections and ptypes it defines;
    a plain mapping grows the missing entries.

    Returns:
        True if the rule was appended, False if the model has no slot for it
    """
    sec = rule.section
    all_sections = _sections(model)

    if getattr(model, "model", None) is all_sections:
        by_ptype = all_sections.get(sec)
        if by_ptype is None or rule.ptype not in by_ptype:
            logger.debug(f"Model defines no '{rule.ptype}' policy; skipping stored rule")
            return False
        by_ptype[rule.ptype].policy.append(rule.policy)
        return True

    if not isinstance(all_sections, MutableMapping):
        raise TypeError("Policy mapping is read-only; cannot load rules into it")
    by_ptype = all_sections.setdefault(sec, {})
    by_ptype.setdefault(rule.ptype, []).append(rule.policy)
    return True
