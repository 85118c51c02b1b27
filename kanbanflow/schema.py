"""
Pipeline, column, card and actor schema.

A pipeline is a board bound to a business context (context_type + context_id).
Columns are ordered stages; each has a numeric id and a stable string key that
transition rules refer to. A card sits in exactly one column of its pipeline.

Role lists and entity type lists follow one convention throughout:
empty or None means "unrestricted", never "nobody allowed".
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, FrozenSet, Iterable

from .errors import InvalidInputError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return _utc_now()


def _opt_list(value: Any) -> Optional[List[str]]:
    """Copy a role/type list, keeping None distinct from []."""
    if value is None:
        return None
    return list(value)


def validate_name_list(value: Any, field_name: str) -> Optional[List[str]]:
    """
    Check a role or entity-type list coming in from a caller.

    A bare string is rejected rather than split into characters:
    "admin" would otherwise grant access to anyone holding role "a".

    Raises:
        InvalidInputError unless value is None or a list/tuple/set of strings.
    """
    if value is None:
        return None
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidInputError(
            f"{field_name} must be a list of strings, got {type(value).__name__}"
        )
    for item in value:
        if not isinstance(item, str) or not item:
            raise InvalidInputError(f"{field_name} entries must be non-empty strings, got {item!r}")
    return list(value)


@dataclass(frozen=True)
class Actor:
    """Authenticated identity performing an operation. Immutable per request."""
    id: str
    name: str
    roles: FrozenSet[str] = frozenset()
    email: Optional[str] = None
    organization_id: Optional[str] = None

    def __post_init__(self):
        # Accept any collection of role names, store a frozenset
        roles = validate_name_list(self.roles, "roles") or ()
        if not isinstance(self.roles, frozenset):
            object.__setattr__(self, "roles", frozenset(roles))

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(r in self.roles for r in roles)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "roles": sorted(self.roles),
            "email": self.email,
            "organization_id": self.organization_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            roles=data.get("roles") or (),
            email=data.get("email"),
            organization_id=data.get("organization_id"),
        )


@dataclass
class Pipeline:
    """A named Kanban board scoped to a business context."""

    id: Optional[int]               # None until first saved; SQLite assigns it
    name: str
    context_type: str
    context_id: str

    # Access
    allowed_roles_view: Optional[List[str]] = None
    allowed_roles_manage: Optional[List[str]] = None

    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "context_type": self.context_type,
            "context_id": self.context_id,
            "allowed_roles_view": self.allowed_roles_view,
            "allowed_roles_manage": self.allowed_roles_manage,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pipeline":
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            context_type=data.get("context_type", ""),
            context_id=str(data.get("context_id", "")),
            allowed_roles_view=_opt_list(data.get("allowed_roles_view")),
            allowed_roles_manage=_opt_list(data.get("allowed_roles_manage")),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class Column:
    """An ordered stage within a pipeline."""

    id: Optional[int]               # None until first saved; SQLite assigns it
    pipeline_id: int
    key: str                        # stable identifier used in transition rules, e.g. "triagem"
    name: str
    position: int                   # unique within the pipeline, left to right

    # Gates
    allowed_entity_types: Optional[List[str]] = None
    allowed_roles_view: Optional[List[str]] = None
    allowed_roles_move_in: Optional[List[str]] = None
    allowed_roles_move_out: Optional[List[str]] = None
    transition_rules: Optional[Any] = None      # raw rule document, see rules.py

    # Opaque pass-through configuration
    notification_rules: Optional[Dict[str, Any]] = None
    card_layout: Optional[Dict[str, Any]] = None
    filter_config: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "key": self.key,
            "name": self.name,
            "position": self.position,
            "allowed_entity_types": self.allowed_entity_types,
            "allowed_roles_view": self.allowed_roles_view,
            "allowed_roles_move_in": self.allowed_roles_move_in,
            "allowed_roles_move_out": self.allowed_roles_move_out,
            "transition_rules": self.transition_rules,
            "notification_rules": self.notification_rules,
            "card_layout": self.card_layout,
            "filter_config": self.filter_config,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(
            id=int(data["id"]),
            pipeline_id=int(data["pipeline_id"]),
            key=data.get("key", ""),
            name=data.get("name", ""),
            position=int(data.get("position", 0)),
            allowed_entity_types=_opt_list(data.get("allowed_entity_types")),
            allowed_roles_view=_opt_list(data.get("allowed_roles_view")),
            allowed_roles_move_in=_opt_list(data.get("allowed_roles_move_in")),
            allowed_roles_move_out=_opt_list(data.get("allowed_roles_move_out")),
            transition_rules=data.get("transition_rules"),
            notification_rules=data.get("notification_rules"),
            card_layout=data.get("card_layout"),
            filter_config=data.get("filter_config"),
        )


@dataclass
class Card:
    """A movable unit representing an external entity."""

    id: Optional[int]               # None until first saved; SQLite assigns it
    pipeline_id: int
    column_id: int                  # the only field the move engine changes
    entity_type: str                # e.g. "project", "proposal"
    entity_id: str
    position: int = 0               # ordering among siblings in a column
    data_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "column_id": self.column_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "position": self.position,
            "data_snapshot": self.data_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        snapshot = data.get("data_snapshot") or {}
        return cls(
            id=int(data["id"]),
            pipeline_id=int(data["pipeline_id"]),
            column_id=int(data["column_id"]),
            entity_type=data.get("entity_type", ""),
            entity_id=str(data.get("entity_id", "")),
            position=int(data.get("position", 0)),
            data_snapshot=dict(snapshot),
        )
