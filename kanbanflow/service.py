"""
Workflow service: the operation surface over store, commands and events.

    move_card()        validate + apply one move, audit it, publish card.moved
    undo_last_move()   undo the newest move of a session's executor

Board setup and reads (create_pipeline, add_column, add_card, get_*,
update_column) live here too so callers never touch the store directly.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from .commands import CommandExecutor, MoveCardCommand, SessionRegistry
from .config import Config
from .errors import (
    ConflictError,
    InvalidInputError,
    UnauthorizedError,
    UnexpectedError,
    WorkflowError,
)
from .events import CardMovedEvent, EventNotifier
from .notify import AuditLogger, HttpNotificationSink
from .permissions import can_manage_pipeline, can_view_column, can_view_pipeline
from .rules import parse_rules
from .schema import Actor, Card, Column, Pipeline, validate_name_list
from .store import WorkflowStore
from .telegram_bridge import TelegramMoveNotifier

logger = logging.getLogger(__name__)

# Column fields update_column() may change; key and pipeline are fixed
UPDATABLE_COLUMN_FIELDS = (
    "name",
    "position",
    "allowed_entity_types",
    "allowed_roles_view",
    "allowed_roles_move_in",
    "allowed_roles_move_out",
    "transition_rules",
    "notification_rules",
    "card_layout",
    "filter_config",
)

# Column fields holding role or entity-type names
NAME_LIST_FIELDS = (
    "allowed_entity_types",
    "allowed_roles_view",
    "allowed_roles_move_in",
    "allowed_roles_move_out",
)


def _checked_gates(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate column gate fields before they are stored.

    Raises:
        InvalidInputError: a name list that is not a list of strings
        InvalidTransitionError: malformed transition_rules
    """
    checked = dict(values)
    for name in NAME_LIST_FIELDS:
        if name in checked:
            checked[name] = validate_name_list(checked[name], name)
    if checked.get("transition_rules") is not None:
        parse_rules(checked["transition_rules"])
    return checked


@dataclass
class MoveCardResponse:
    """What a successful move returns to the caller."""
    card_id: int
    new_column_id: int
    success: bool
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "new_column_id": self.new_column_id,
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class WorkflowService:
    """Orchestrates pipeline reads, column updates and card moves."""

    def __init__(
        self,
        store: WorkflowStore,
        notifier: Optional[EventNotifier] = None,
        sessions: Optional[SessionRegistry] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.notifier = notifier or EventNotifier()
        self.sessions = sessions or SessionRegistry()
        self.audit = audit
        self._card_locks: Dict[int, list] = {}    # card id -> [lock, holders]
        self._guard = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Config) -> "WorkflowService":
        """Wire store, audit trail and notification sinks from config."""
        notifier = EventNotifier()
        notifier.add_sink(HttpNotificationSink(
            cfg.notification_url,
            fallback_path=cfg.notification_fallback_path,
            channels=cfg.notification_channels,
            timeout=cfg.notification_timeout,
        ))
        if cfg.telegram_chat_ids:
            telegram = TelegramMoveNotifier.from_env(cfg.telegram_token_env, cfg.telegram_chat_ids)
            if telegram is not None:
                notifier.add_sink(telegram)

        return cls(
            store=WorkflowStore(cfg.db_path),
            notifier=notifier,
            audit=AuditLogger(cfg.audit_log) if cfg.audit_log else None,
        )

    # ──────────────────────────────────────────
    # Board setup
    # ──────────────────────────────────────────

    def create_pipeline(
        self,
        name: str,
        context_type: str,
        context_id: str,
        allowed_roles_view: Optional[List[str]] = None,
        allowed_roles_manage: Optional[List[str]] = None,
    ) -> Pipeline:
        if not name:
            raise InvalidInputError("Pipeline name cannot be empty")
        pipeline = Pipeline(
            id=None,
            name=name,
            context_type=context_type,
            context_id=str(context_id),
            allowed_roles_view=validate_name_list(allowed_roles_view, "allowed_roles_view"),
            allowed_roles_manage=validate_name_list(allowed_roles_manage, "allowed_roles_manage"),
        )
        self.store.save_pipeline(pipeline)
        logger.info(f"Pipeline created: {pipeline.id} ({name})")
        return pipeline

    def add_column(
        self,
        pipeline_id: int,
        key: str,
        name: str,
        position: int,
        **gates,
    ) -> Column:
        """
        Add a column to a pipeline.

        gates: any of the updatable column fields except name/position
        (entity types, role lists, transition_rules, opaque blobs).
        """
        self._require_pipeline(pipeline_id)
        if not key:
            raise InvalidInputError("Column key cannot be empty")
        unknown = set(gates) - set(UPDATABLE_COLUMN_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown column fields: {sorted(unknown)}")
        gates = _checked_gates(gates)

        with self._guard:
            for existing in self.store.list_columns(pipeline_id):
                if existing.key == key:
                    raise InvalidInputError(f"Column key already used in pipeline {pipeline_id}: {key}")
                if existing.position == position:
                    raise InvalidInputError(f"Column position already used in pipeline {pipeline_id}: {position}")
            column = Column(
                id=None,
                pipeline_id=pipeline_id,
                key=key,
                name=name,
                position=position,
                **gates,
            )
            self.store.save_column(column)
        logger.info(f"Column added to pipeline {pipeline_id}: {key} at position {position}")
        return column

    def add_card(
        self,
        pipeline_id: int,
        column_id: int,
        entity_type: str,
        entity_id: str,
        position: int = 0,
        data_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Card:
        """Place a new card; the column must belong to the pipeline."""
        self._require_pipeline(pipeline_id)
        column = self._require_column(pipeline_id, column_id)
        if not entity_type:
            raise InvalidInputError("Entity type cannot be empty")

        card = Card(
            id=None,
            pipeline_id=pipeline_id,
            column_id=column.id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            position=position,
            data_snapshot=dict(data_snapshot or {}),
        )
        self.store.save_card(card)
        logger.info(f"Card {card.id} ({entity_type} {entity_id}) added to column {column.key}")
        return card

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    def get_pipeline(self, pipeline_id: int, actor: Optional[Actor] = None) -> Pipeline:
        """Load a pipeline; with an actor, enforce its view roles."""
        pipeline = self._require_pipeline(pipeline_id)
        if actor is not None and not can_view_pipeline(actor, pipeline):
            logger.warning(f"User {actor.id} denied view of pipeline {pipeline_id}")
            raise UnauthorizedError(f"User cannot view pipeline: {pipeline_id}")
        return pipeline

    def get_pipeline_columns(self, pipeline_id: int, actor: Optional[Actor] = None) -> List[Column]:
        """Columns left to right; with an actor, only those they may view."""
        columns = self.store.list_columns(pipeline_id)
        if actor is None:
            return columns
        return [c for c in columns if can_view_column(actor, c)]

    def get_column_cards(self, column_id: int) -> List[Card]:
        return self.store.list_cards(column_id)

    def get_card(self, card_id: int) -> Card:
        card = self.store.get_card(card_id)
        if card is None:
            raise InvalidInputError(f"Card not found: {card_id}")
        return card

    # ──────────────────────────────────────────
    # Column configuration
    # ──────────────────────────────────────────

    def update_column(
        self,
        pipeline_id: int,
        column_id: int,
        updates: Dict[str, Any],
        actor: Actor,
    ) -> Column:
        """
        Partially update a column. Only keys present in updates change;
        a None value leaves the field as is.

        Raises:
            InvalidInputError: unknown column/field, wrong pipeline, taken position
            UnauthorizedError: actor lacks the pipeline's manage roles
            InvalidTransitionError: malformed transition_rules
        """
        logger.info(f"Updating column {column_id} in pipeline {pipeline_id}")
        pipeline = self._require_pipeline(pipeline_id)
        if actor is None:
            raise InvalidInputError("Actor cannot be null")
        if not can_manage_pipeline(actor, pipeline):
            raise UnauthorizedError(f"User cannot manage pipeline: {pipeline_id}")
        column = self._require_column(pipeline_id, column_id)

        unknown = set(updates) - set(UPDATABLE_COLUMN_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown column fields: {sorted(unknown)}")

        changes = _checked_gates({k: v for k, v in updates.items() if v is not None})

        with self._guard:
            if "position" in changes and changes["position"] != column.position:
                for other in self.store.list_columns(pipeline_id):
                    if other.id != column.id and other.position == changes["position"]:
                        raise InvalidInputError(
                            f"Column position already used in pipeline {pipeline_id}: {changes['position']}"
                        )
            for name, value in changes.items():
                setattr(column, name, value)
            self.store.save_column(column)

        logger.info(f"Column {column_id} updated: {sorted(changes)}")
        return column

    # ──────────────────────────────────────────
    # Moves
    # ──────────────────────────────────────────

    def move_card(
        self,
        pipeline_id: int,
        card_id: int,
        from_column_id: int,
        to_column_id: int,
        actor: Actor,
        executor: Optional[CommandExecutor] = None,
    ) -> MoveCardResponse:
        """
        Move a card with every gate checked.

        executor defaults to the actor's own session executor, so the move
        can later be undone with undo_last_move(sessions.executor_for(actor.id)).

        Raises a WorkflowError subclass on any failure; the card is then unchanged.
        """
        logger.info(f"Moving card {card_id} in pipeline {pipeline_id}: {from_column_id} -> {to_column_id}")
        actor_id = actor.id if actor else None

        try:
            # Cheap input checks first, before any lookup
            if card_id is None:
                raise InvalidInputError("Card ID cannot be null")
            if from_column_id is not None and from_column_id == to_column_id:
                raise InvalidInputError("From and to columns cannot be the same")
            if actor is None:
                raise InvalidInputError("Actor cannot be null")
            if executor is None:
                executor = self.sessions.executor_for(actor.id)

            with self._card_lock(card_id):
                self._require_pipeline(pipeline_id)
                card = self.store.get_card(card_id)
                if card is None:
                    raise InvalidInputError(f"Card not found: {card_id}")
                if card.pipeline_id != pipeline_id:
                    raise InvalidInputError("Card does not belong to this pipeline")
                if from_column_id is not None and card.column_id != from_column_id:
                    raise ConflictError(
                        f"Card {card_id} is no longer in column {from_column_id} "
                        f"(now in {card.column_id})"
                    )

                command = MoveCardCommand(card, from_column_id, to_column_id, actor, self.store)
                result = executor.execute(command)

        except WorkflowError as e:
            self._audit("rejected", actor_id, card_id, from_column_id, to_column_id,
                        kind=e.kind.value, message=e.message)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error moving card {card_id}")
            message = f"Unexpected error: {e}"
            self._audit("rejected", actor_id, card_id, from_column_id, to_column_id,
                        kind="unexpected", message=message)
            raise UnexpectedError(message) from e

        self._audit("moved", actor_id, card_id, from_column_id, to_column_id, message=result.message)
        self.notifier.publish(CardMovedEvent(
            card_id=card.id,
            pipeline_id=pipeline_id,
            from_column_id=from_column_id,
            to_column_id=to_column_id,
            entity_type=card.entity_type,
            entity_id=card.entity_id,
            actor=actor,
        ))

        return MoveCardResponse(
            card_id=card.id,
            new_column_id=card.column_id,
            success=True,
            message=result.message,
        )

    def undo_last_move(self, executor: CommandExecutor) -> None:
        """
        Undo the newest command in executor's history.

        Raises NoHistoryError when there is nothing to undo. No gate is
        re-checked for the reverse move. A failed undo still consumes the
        command, is audited as undo_failed and raises UnexpectedError.
        """
        command = executor.peek()
        card = getattr(command, "card", None)
        actor_id = command.actor.id if command is not None and command.actor else None
        card_id = card.id if card else None
        # Reverse move: from the destination back to the source
        from_column_id = getattr(command, "to_column_id", None)
        to_column_id = getattr(command, "from_column_id", None)

        try:
            executor.undo()
        except WorkflowError as e:
            if command is not None:
                self._audit("undo_failed", actor_id, card_id, from_column_id, to_column_id,
                            kind=e.kind.value, message=e.message)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error undoing move of card {card_id}")
            message = f"Unexpected error: {e}"
            self._audit("undo_failed", actor_id, card_id, from_column_id, to_column_id,
                        kind="unexpected", message=message)
            raise UnexpectedError(message) from e

        self._audit("undone", actor_id, card_id, from_column_id, to_column_id)

    def end_session(self, session_key: str) -> bool:
        """Drop a session's undo history."""
        return self.sessions.end_session(session_key)

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    @contextmanager
    def _card_lock(self, card_id: int):
        """Hold the card's lock; the entry is dropped when nobody needs it."""
        with self._guard:
            entry = self._card_locks.get(card_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._card_locks[card_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._card_locks[card_id]

    def _require_pipeline(self, pipeline_id: int) -> Pipeline:
        pipeline = self.store.get_pipeline(pipeline_id)
        if pipeline is None:
            logger.warning(f"Pipeline not found: {pipeline_id}")
            raise InvalidInputError(f"Pipeline not found: {pipeline_id}")
        return pipeline

    def _require_column(self, pipeline_id: int, column_id: int) -> Column:
        column = self.store.get_column(column_id)
        if column is None:
            raise InvalidInputError(f"Column not found: {column_id}")
        if column.pipeline_id != pipeline_id:
            logger.warning(f"Column {column_id} does not belong to pipeline {pipeline_id}")
            raise InvalidInputError("Column does not belong to this pipeline")
        return column

    def _audit(self, status: str, actor_id, card_id, from_column_id, to_column_id, **extra):
        if self.audit is not None:
            self.audit.log(status, actor_id, card_id, from_column_id, to_column_id, **extra)
