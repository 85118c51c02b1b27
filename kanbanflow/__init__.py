# kanbanflow: card-move authorization and transition engine for Kanban pipelines
#
# Components:
#   schema.py          - Data model (Actor, Pipeline, Column, Card)
#   errors.py          - Error kinds, typed exceptions, gate Verdict
#   permissions.py     - Role gates (view / manage / move-in / move-out) and entity types
#   rules.py           - Transition rule documents: parsing and evaluation
#   commands.py        - MoveCardCommand, per-session CommandExecutor with undo
#   events.py          - card.moved events, listeners and async sinks
#   notify.py          - Audit trail and HTTP notification sink
#   telegram_bridge.py - Telegram move notifications
#   store.py           - SQLite persistence layer
#   service.py         - WorkflowService: the operation surface
#   config.py          - YAML / environment configuration and logging setup

from .errors import (
    ErrorKind,
    WorkflowError,
    InvalidInputError,
    UnauthorizedError,
    InvalidTransitionError,
    InvalidEntityTypeError,
    NoHistoryError,
    ConflictError,
    UnexpectedError,
)
from .schema import Actor, Pipeline, Column, Card
from .commands import CommandExecutor, MoveCardCommand, SessionRegistry
from .events import CardMovedEvent, EventNotifier
from .service import MoveCardResponse, WorkflowService

__version__ = "0.1.0"
