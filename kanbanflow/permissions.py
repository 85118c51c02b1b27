"""
Role-based permission checks and the entity-type gate.

Permission checks answer with a bool and never raise; the caller decides what
a False means. The entity-type gate answers with a Verdict.
"""
from typing import Optional, Iterable

from .errors import ErrorKind, Verdict
from .schema import Actor, Column, Pipeline


def allowed(actor: Actor, required_roles: Optional[Iterable[str]]) -> bool:
    """
    True if required_roles is empty/None, else True iff the actor holds at
    least one of them.
    """
    if not required_roles:
        return True
    if actor is None:
        return False
    if isinstance(required_roles, str):
        # One role name, never a set of letters
        required_roles = [required_roles]
    return actor.has_any_role(required_roles)


def can_move_out(actor: Actor, column: Column) -> bool:
    """Actor may take cards out of this column."""
    return allowed(actor, column.allowed_roles_move_out)


def can_move_in(actor: Actor, column: Column) -> bool:
    """Actor may put cards into this column."""
    return allowed(actor, column.allowed_roles_move_in)


def can_view_column(actor: Actor, column: Column) -> bool:
    return allowed(actor, column.allowed_roles_view)


def can_view_pipeline(actor: Actor, pipeline: Pipeline) -> bool:
    return allowed(actor, pipeline.allowed_roles_view)


def can_manage_pipeline(actor: Actor, pipeline: Pipeline) -> bool:
    return allowed(actor, pipeline.allowed_roles_manage)


def check_entity_type(entity_type: str, allowed_types: Optional[Iterable[str]]) -> Verdict:
    """Accept the entity type if the list is empty/None or contains it."""
    if not allowed_types:
        return Verdict.allow()

    allowed_list = [allowed_types] if isinstance(allowed_types, str) else list(allowed_types)
    if entity_type in allowed_list:
        return Verdict.allow()

    return Verdict.reject(
        ErrorKind.INVALID_ENTITY_TYPE,
        f"Entity type '{entity_type}' not allowed in this column. "
        f"Allowed types: {allowed_list}",
    )
