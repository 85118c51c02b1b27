"""
Move command and command history.

Command lifecycle:
  CREATED → VALIDATED → APPLIED → UNDONE
  CREATED → FAILED                 (any gate rejected, or the write failed)

A command is executed at most once and undone at most once.

Gate order for a move (first failure aborts the rest):
  1. input present, source != destination
  2. both columns exist and belong to the card's pipeline
  3. move-out roles of the source column
  4. move-in roles of the destination column
  5. transition rules of the destination column (by column key)
  6. allowed entity types of the destination column
  7. compare-and-set write (the only mutation)
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from .errors import (
    ErrorKind,
    InvalidInputError,
    NoHistoryError,
    UnauthorizedError,
    UnexpectedError,
    WorkflowError,
)
from .permissions import can_move_in, can_move_out, check_entity_type
from .rules import validate_transition
from .schema import Actor, Card, Column

logger = logging.getLogger(__name__)


class CommandState(Enum):
    CREATED = "created"
    VALIDATED = "validated"
    APPLIED = "applied"
    UNDONE = "undone"
    FAILED = "failed"


@dataclass
class CommandResult:
    """Outcome of a command execution."""
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    kind: Optional[ErrorKind] = None    # set on failure

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "kind": self.kind.value if self.kind else None,
        }


class WorkflowCommand:
    """Base class for undoable workflow operations."""

    actor: Optional[Actor] = None
    result: Optional[CommandResult] = None

    def execute(self) -> CommandResult:
        raise NotImplementedError

    def undo(self) -> None:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return type(self).__name__


class MoveCardCommand(WorkflowCommand):
    """Move one card from one column to another, with every gate checked."""

    def __init__(
        self,
        card: Optional[Card],
        from_column_id: Optional[int],
        to_column_id: Optional[int],
        actor: Optional[Actor],
        store,
    ):
        self.card = card
        self.from_column_id = from_column_id
        self.to_column_id = to_column_id
        self.actor = actor
        self.store = store
        self.state = CommandState.CREATED
        self.result: Optional[CommandResult] = None
        self.from_column: Optional[Column] = None
        self.to_column: Optional[Column] = None

    # ──────────────────────────────────────────
    # Execution
    # ──────────────────────────────────────────

    def execute(self) -> CommandResult:
        """
        Run all gates, then apply the move.

        On failure the result records the message AND the typed error is
        raised; both carry the same text.
        """
        if self.state is not CommandState.CREATED:
            raise InvalidInputError(f"Command cannot be executed in state '{self.state.value}'")

        try:
            self._validate_input()
            from_column, to_column = self._resolve_columns()
            self._check_gates(from_column, to_column)
            self.state = CommandState.VALIDATED
            self._apply(from_column, to_column)

        except WorkflowError as e:
            self.state = CommandState.FAILED
            self.result = CommandResult(False, e.message, kind=e.kind)
            logger.warning(f"Card move rejected ({e.kind.value}): {e.message}")
            raise

        except Exception as e:
            self.state = CommandState.FAILED
            message = f"Unexpected error: {e}"
            self.result = CommandResult(False, message, kind=ErrorKind.UNEXPECTED)
            logger.exception(
                f"Unexpected error moving card {getattr(self.card, 'id', None)} "
                f"from column {self.from_column_id} to {self.to_column_id}"
            )
            raise UnexpectedError(message) from e

        return self.result

    def _validate_input(self):
        if self.card is None:
            raise InvalidInputError("Card cannot be null")
        if self.card.id is None:
            raise InvalidInputError("Card ID cannot be null")
        if self.from_column_id is None:
            raise InvalidInputError("From column ID cannot be null")
        if self.to_column_id is None:
            raise InvalidInputError("To column ID cannot be null")
        if self.from_column_id == self.to_column_id:
            raise InvalidInputError("From and to columns cannot be the same")
        if self.actor is None:
            raise InvalidInputError("Actor cannot be null")

    def _resolve_columns(self) -> Tuple[Column, Column]:
        from_column = self.store.get_column(self.from_column_id)
        if from_column is None:
            raise InvalidInputError(f"From column not found: {self.from_column_id}")
        to_column = self.store.get_column(self.to_column_id)
        if to_column is None:
            raise InvalidInputError(f"To column not found: {self.to_column_id}")

        for column in (from_column, to_column):
            if column.pipeline_id != self.card.pipeline_id:
                raise InvalidInputError(
                    f"Column {column.key} ({column.id}) does not belong to "
                    f"pipeline {self.card.pipeline_id}"
                )

        self.from_column = from_column
        self.to_column = to_column
        return from_column, to_column

    def _check_gates(self, from_column: Column, to_column: Column):
        if not can_move_out(self.actor, from_column):
            raise UnauthorizedError(f"User cannot move cards out of column: {from_column.key}")

        if not can_move_in(self.actor, to_column):
            raise UnauthorizedError(f"User cannot move cards into column: {to_column.key}")

        validate_transition(
            from_column.key,
            to_column.key,
            self.actor,
            to_column.transition_rules,
        ).raise_if_rejected()

        check_entity_type(
            self.card.entity_type,
            to_column.allowed_entity_types,
        ).raise_if_rejected()

    def _apply(self, from_column: Column, to_column: Column):
        self.store.move_card(self.card.id, self.from_column_id, self.to_column_id)
        self.card.column_id = self.to_column_id
        self.state = CommandState.APPLIED

        self.result = CommandResult(
            True,
            f"Card moved successfully from column {from_column.key} to {to_column.key}",
            data={
                "card_id": self.card.id,
                "from_column_id": self.from_column_id,
                "to_column_id": self.to_column_id,
                "from_column_key": from_column.key,
                "to_column_key": to_column.key,
            },
        )
        logger.info(
            f"Card {self.card.id} moved from column {self.from_column_id} "
            f"to {self.to_column_id} by user {self.actor.id}"
        )

    # ──────────────────────────────────────────
    # Undo
    # ──────────────────────────────────────────

    def undo(self) -> None:
        """
        Put the card back in its source column.

        Plain compensating write: no gate is re-run. Whether undo is allowed
        at all is the caller's decision.
        """
        if self.state is not CommandState.APPLIED:
            raise InvalidInputError(f"Command cannot be undone in state '{self.state.value}'")

        # Column only: edits made to the card since the move are kept
        self.store.set_card_column(self.card.id, self.from_column_id)
        self.card.column_id = self.from_column_id
        self.state = CommandState.UNDONE
        logger.info(f"Card move undone for card: {self.card.id}")


class CommandExecutor:
    """
    Runs commands and keeps a LIFO history for undo.

    One executor per session. When owner_id is set, only that actor's
    commands are accepted, so an undo can never reach someone else's move.
    """

    def __init__(self, owner_id: Optional[str] = None):
        self.owner_id = owner_id
        self._history: List[WorkflowCommand] = []
        self._lock = threading.RLock()

    def execute(self, command: WorkflowCommand) -> CommandResult:
        """Execute; push to history only if nothing was raised."""
        if self.owner_id is not None:
            actor_id = command.actor.id if command.actor else None
            if actor_id != self.owner_id:
                raise InvalidInputError(
                    f"Executor belongs to user {self.owner_id}, not {actor_id}"
                )

        with self._lock:
            try:
                result = command.execute()
            except Exception as e:
                logger.debug(f"Command {command.name} failed: {e}")
                raise
            self._history.append(command)
            logger.info(f"Command executed: {command.name}")
            return result

    def undo(self) -> WorkflowCommand:
        """
        Undo the most recent command.

        The command is consumed even if its undo raises; it is not pushed back.
        """
        with self._lock:
            if not self._history:
                raise NoHistoryError("No command to undo")
            command = self._history.pop()
            try:
                command.undo()
            except Exception:
                logger.exception(f"Error undoing command: {command.name}")
                raise
            logger.info(f"Command undone: {command.name}")
            return command

    def peek(self) -> Optional[WorkflowCommand]:
        """The command undo() would reverse next, or None."""
        with self._lock:
            return self._history[-1] if self._history else None

    def has_history(self) -> bool:
        with self._lock:
            return bool(self._history)

    def history_size(self) -> int:
        with self._lock:
            return len(self._history)

    def clear(self) -> None:
        """Drop the history without undoing anything."""
        with self._lock:
            self._history.clear()


class SessionRegistry:
    """Hands out one CommandExecutor per session key (no shared global history)."""

    def __init__(self):
        self._executors: Dict[str, CommandExecutor] = {}
        self._lock = threading.Lock()

    def executor_for(self, session_key: str, owner_id: Optional[str] = None) -> CommandExecutor:
        """Get or create the executor for a session. owner_id defaults to the key."""
        with self._lock:
            executor = self._executors.get(session_key)
            if executor is None:
                executor = CommandExecutor(owner_id=owner_id if owner_id is not None else session_key)
                self._executors[session_key] = executor
            return executor

    def end_session(self, session_key: str) -> bool:
        """Forget a session's history. Returns False if it did not exist."""
        with self._lock:
            executor = self._executors.pop(session_key, None)
        if executor is None:
            return False
        executor.clear()
        return True

    def session_count(self) -> int:
        with self._lock:
            return len(self._executors)
