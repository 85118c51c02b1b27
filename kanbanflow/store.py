"""
Pipeline / column / card storage backend (SQLite).

Provides the find/persist operations the move engine consumes, plus the
compare-and-set card move that makes concurrent moves of one card safe
across threads and processes.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Dict, Any, Iterator

from .errors import ConflictError, InvalidInputError
from .schema import Pipeline, Column, Card

logger = logging.getLogger(__name__)

# JSON-encoded columns per table
_PIPELINE_JSON = ("allowed_roles_view", "allowed_roles_manage")
_COLUMN_JSON = (
    "allowed_entity_types", "allowed_roles_view", "allowed_roles_move_in",
    "allowed_roles_move_out", "transition_rules", "notification_rules",
    "card_layout", "filter_config",
)
_CARD_JSON = ("data_snapshot",)


def _encode(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _decode(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkflowStore:
    """SQLite-backed store for pipelines, columns and cards."""

    def __init__(self, db_path: str = None, timeout: float = 10.0):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "kanbanflow" / "workflow.db")
        self.db_path = db_path
        self.timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _connect(self, autocommit: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection with FK enforcement and WAL mode; commit or roll back, then close."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            isolation_level=None if autocommit else "",
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            if not autocommit:
                conn.commit()
        except Exception:
            if not autocommit:
                conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipelines (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    context_type TEXT NOT NULL,
                    context_id TEXT NOT NULL,
                    allowed_roles_view TEXT,    -- JSON list
                    allowed_roles_manage TEXT,  -- JSON list
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_columns (
                    id INTEGER PRIMARY KEY,
                    pipeline_id INTEGER NOT NULL,
                    key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    allowed_entity_types TEXT,
                    allowed_roles_view TEXT,
                    allowed_roles_move_in TEXT,
                    allowed_roles_move_out TEXT,
                    transition_rules TEXT,      -- JSON rule document
                    notification_rules TEXT,
                    card_layout TEXT,
                    filter_config TEXT,
                    updated_at TEXT NOT NULL,
                    UNIQUE (pipeline_id, position),
                    UNIQUE (pipeline_id, key),
                    FOREIGN KEY (pipeline_id) REFERENCES pipelines(id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_cards (
                    id INTEGER PRIMARY KEY,
                    pipeline_id INTEGER NOT NULL,
                    column_id INTEGER NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    position INTEGER DEFAULT 0,
                    data_snapshot TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (pipeline_id) REFERENCES pipelines(id),
                    FOREIGN KEY (column_id) REFERENCES pipeline_columns(id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_columns_pipeline ON pipeline_columns(pipeline_id, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cards_column ON pipeline_cards(column_id, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cards_entity ON pipeline_cards(entity_type, entity_id)")

    # ── Pipelines ────────────────────────────────────────────

    def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Insert or update a pipeline. With id None, SQLite assigns the id."""
        pipeline.updated_at = datetime.now(timezone.utc)
        data = pipeline.to_dict()
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT INTO pipelines
                (id, name, context_type, context_id, allowed_roles_view,
                 allowed_roles_manage, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    allowed_roles_view=excluded.allowed_roles_view,
                    allowed_roles_manage=excluded.allowed_roles_manage,
                    updated_at=excluded.updated_at
            """, (
                data["id"],
                data["name"],
                data["context_type"],
                data["context_id"],
                _encode(data["allowed_roles_view"]),
                _encode(data["allowed_roles_manage"]),
                data["created_at"],
                data["updated_at"],
            ))
            if pipeline.id is None:
                pipeline.id = cur.lastrowid
        return pipeline

    def get_pipeline(self, pipeline_id: int) -> Optional[Pipeline]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM pipelines WHERE id = ?", (pipeline_id,)).fetchone()
        return self._row_to_pipeline(row) if row else None

    def list_pipelines(self, context_type: str = None, context_id: str = None) -> List[Pipeline]:
        """List pipelines, optionally filtered by owning context."""
        query = "SELECT * FROM pipelines"
        params: list = []
        if context_type is not None:
            query += " WHERE context_type = ?"
            params.append(context_type)
            if context_id is not None:
                query += " AND context_id = ?"
                params.append(str(context_id))
        query += " ORDER BY id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_pipeline(r) for r in rows]

    # ── Columns ──────────────────────────────────────────────

    def save_column(self, column: Column) -> Column:
        """Insert or update a column. With id None, SQLite assigns the id."""
        data = column.to_dict()
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT INTO pipeline_columns
                (id, pipeline_id, key, name, position, allowed_entity_types,
                 allowed_roles_view, allowed_roles_move_in, allowed_roles_move_out,
                 transition_rules, notification_rules, card_layout, filter_config,
                 updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    key=excluded.key,
                    name=excluded.name,
                    position=excluded.position,
                    allowed_entity_types=excluded.allowed_entity_types,
                    allowed_roles_view=excluded.allowed_roles_view,
                    allowed_roles_move_in=excluded.allowed_roles_move_in,
                    allowed_roles_move_out=excluded.allowed_roles_move_out,
                    transition_rules=excluded.transition_rules,
                    notification_rules=excluded.notification_rules,
                    card_layout=excluded.card_layout,
                    filter_config=excluded.filter_config,
                    updated_at=excluded.updated_at
            """, (
                data["id"],
                data["pipeline_id"],
                data["key"],
                data["name"],
                data["position"],
                *(_encode(data[name]) for name in _COLUMN_JSON),
                _utc_now(),
            ))
            if column.id is None:
                column.id = cur.lastrowid
        return column

    def get_column(self, column_id: int) -> Optional[Column]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM pipeline_columns WHERE id = ?", (column_id,)).fetchone()
        return self._row_to_column(row) if row else None

    def list_columns(self, pipeline_id: int) -> List[Column]:
        """Columns of a pipeline, left to right."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_columns WHERE pipeline_id = ? ORDER BY position ASC",
                (pipeline_id,),
            ).fetchall()
        return [self._row_to_column(r) for r in rows]

    # ── Cards ────────────────────────────────────────────────

    def save_card(self, card: Card) -> Card:
        """
        Insert or update a card (plain write, no concurrency check).

        With id None, SQLite assigns the id, so concurrent creators never collide.
        """
        data = card.to_dict()
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT INTO pipeline_cards
                (id, pipeline_id, column_id, entity_type, entity_id, position,
                 data_snapshot, version, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT(id) DO UPDATE SET
                    column_id=excluded.column_id,
                    entity_type=excluded.entity_type,
                    entity_id=excluded.entity_id,
                    position=excluded.position,
                    data_snapshot=excluded.data_snapshot,
                    version=pipeline_cards.version + 1,
                    updated_at=excluded.updated_at
            """, (
                data["id"],
                data["pipeline_id"],
                data["column_id"],
                data["entity_type"],
                data["entity_id"],
                data["position"],
                _encode(data["data_snapshot"]),
                _utc_now(),
            ))
            if card.id is None:
                card.id = cur.lastrowid
        return card

    def get_card(self, card_id: int) -> Optional[Card]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM pipeline_cards WHERE id = ?", (card_id,)).fetchone()
        return self._row_to_card(row) if row else None

    def list_cards(self, column_id: int) -> List[Card]:
        """Cards of a column, in display order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_cards WHERE column_id = ? ORDER BY position ASC, id ASC",
                (column_id,),
            ).fetchall()
        return [self._row_to_card(r) for r in rows]

    def move_card(self, card_id: int, from_column_id: int, to_column_id: int) -> None:
        """
        Compare-and-set the card's column.

        Runs in a BEGIN IMMEDIATE transaction so no other writer can slip in
        between the read and the write.

        Raises:
            InvalidInputError if the card does not exist.
            ConflictError if the card is no longer in from_column_id.
        """
        with self._connect(autocommit=True) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT column_id FROM pipeline_cards WHERE id = ?", (card_id,)
                ).fetchone()
                if row is None:
                    raise InvalidInputError(f"Card not found: {card_id}")
                if row["column_id"] != from_column_id:
                    raise ConflictError(
                        f"Card {card_id} is no longer in column {from_column_id} "
                        f"(now in {row['column_id']})"
                    )
                conn.execute(
                    "UPDATE pipeline_cards SET column_id = ?, version = version + 1, updated_at = ? WHERE id = ?",
                    (to_column_id, _utc_now(), card_id),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def set_card_column(self, card_id: int, column_id: int) -> None:
        """
        Write only the card's column; every other field stays as stored.

        Raises:
            InvalidInputError if the card does not exist.
        """
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE pipeline_cards SET column_id = ?, version = version + 1, updated_at = ? WHERE id = ?",
                (column_id, _utc_now(), card_id),
            )
            if cur.rowcount == 0:
                raise InvalidInputError(f"Card not found: {card_id}")

    def delete_card(self, card_id: int) -> bool:
        """Delete a card. Returns False if it did not exist."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM pipeline_cards WHERE id = ?", (card_id,))
            return cur.rowcount > 0

    # ── Row mapping ──────────────────────────────────────────

    def _row_to_pipeline(self, row: sqlite3.Row) -> Pipeline:
        data: Dict[str, Any] = dict(row)
        for name in _PIPELINE_JSON:
            data[name] = _decode(data.get(name))
        return Pipeline.from_dict(data)

    def _row_to_column(self, row: sqlite3.Row) -> Column:
        data: Dict[str, Any] = dict(row)
        for name in _COLUMN_JSON:
            data[name] = _decode(data.get(name))
        return Column.from_dict(data)

    def _row_to_card(self, row: sqlite3.Row) -> Card:
        data: Dict[str, Any] = dict(row)
        for name in _CARD_JSON:
            data[name] = _decode(data.get(name))
        return Card.from_dict(data)
