"""
Transition rules: which (from key -> to key) moves exist and who may make them.

Rule document (as stored on a column, JSON-compatible):

    {
      "transitions": [
        {"from": "triagem", "to": "aprovado", "allowedRoles": ["reviewer"]},
        {"from": "triagem", "to": "arquivado"}
      ]
    }

A bare list of entries is accepted too, and "roles" is an alias of
"allowedRoles".

Semantics:
  - empty/absent document  -> every transition allowed
  - otherwise fail-closed  -> only listed (from, to) pairs, exact match,
                              no wildcards, no reachability through other columns
  - entry with roles       -> actor needs at least one of them
  - entry without roles    -> anyone
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from .errors import ErrorKind, InvalidTransitionError, Verdict
from .schema import Actor

logger = logging.getLogger(__name__)

FORMAT_ERROR_PREFIX = "Invalid transition rules format"


@dataclass(frozen=True)
class TransitionRule:
    """One configured column-to-column transition."""
    from_key: str
    to_key: str
    roles: Tuple[str, ...] = ()

    def permits(self, actor: Actor) -> bool:
        if not self.roles:
            return True
        return actor.has_any_role(self.roles)

    def to_dict(self) -> dict:
        entry = {"from": self.from_key, "to": self.to_key}
        if self.roles:
            entry["allowedRoles"] = list(self.roles)
        return entry


@dataclass(frozen=True)
class RuleSet:
    """Parsed rule document."""
    rules: Tuple[TransitionRule, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.rules

    def find(self, from_key: str, to_key: str) -> Optional[TransitionRule]:
        for rule in self.rules:
            if rule.from_key == from_key and rule.to_key == to_key:
                return rule
        return None

    def to_document(self) -> dict:
        return {"transitions": [r.to_dict() for r in self.rules]}


def _format_error(detail: str) -> InvalidTransitionError:
    return InvalidTransitionError(f"{FORMAT_ERROR_PREFIX}: {detail}")


def _parse_key(entry: dict, name: str, index: int) -> str:
    value = entry.get(name)
    if not isinstance(value, str) or not value:
        raise _format_error(f"transition #{index} '{name}' must be a non-empty string")
    return value


def _parse_roles(entry: dict, index: int) -> Tuple[str, ...]:
    roles = entry.get("allowedRoles", entry.get("roles"))
    if roles is None:
        return ()
    if not isinstance(roles, (list, tuple)):
        raise _format_error(f"transition #{index} roles must be a list")
    for role in roles:
        if not isinstance(role, str):
            raise _format_error(f"transition #{index} roles must be strings, got {role!r}")
    return tuple(roles)


def parse_rules(document: Any) -> RuleSet:
    """
    Parse a raw rule document into a RuleSet.

    Raises:
        InvalidTransitionError with an "Invalid transition rules format"
        message when the document has the wrong shape.
    """
    if document is None:
        return RuleSet()

    if isinstance(document, dict):
        transitions = document.get("transitions")
    elif isinstance(document, (list, tuple)):
        transitions = document
    else:
        raise _format_error(f"expected an object or a list, got {type(document).__name__}")

    if transitions is None:
        return RuleSet()
    if not isinstance(transitions, (list, tuple)):
        raise _format_error("'transitions' must be a list")

    rules = []
    for index, entry in enumerate(transitions):
        if not isinstance(entry, dict):
            raise _format_error(f"transition #{index} must be an object")
        rules.append(TransitionRule(
            from_key=_parse_key(entry, "from", index),
            to_key=_parse_key(entry, "to", index),
            roles=_parse_roles(entry, index),
        ))
    return RuleSet(rules=tuple(rules))


def validate_transition(from_key: str, to_key: str, actor: Actor, document: Any) -> Verdict:
    """Decide whether actor may move a card from from_key to to_key."""
    try:
        ruleset = parse_rules(document)
    except InvalidTransitionError as e:
        logger.error(f"Rejecting {from_key} -> {to_key}: {e.message}")
        return Verdict.reject(ErrorKind.INVALID_TRANSITION, e.message)

    if ruleset.is_empty:
        return Verdict.allow()

    rule = ruleset.find(from_key, to_key)
    if rule is None:
        return Verdict.reject(
            ErrorKind.INVALID_TRANSITION,
            f"Transition from '{from_key}' to '{to_key}' is not configured",
        )

    if not rule.permits(actor):
        return Verdict.reject(
            ErrorKind.INVALID_TRANSITION,
            f"User does not have permission for transition '{from_key}' -> '{to_key}'. "
            f"Required roles: {list(rule.roles)}",
        )

    return Verdict.allow()
