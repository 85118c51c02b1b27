"""
Notification sinks and the move audit trail.

  AuditLogger           - appends one JSON line per move outcome
  NotificationPayload   - what goes to the external notification service
  HttpNotificationSink  - POSTs payloads; falls back to a local JSONL file

Nothing here raises into the move path: write/send failures are logged.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

import requests

from .events import CardMovedEvent

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AuditLogger: structured JSON audit trail
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AuditLogger:
    """
    Appends structured JSON audit entries to a .jsonl file.
    Every move, rejected move and undo is recorded.
    """

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)

    def log(
        self,
        status: str,
        actor_id: Optional[str],
        card_id: Optional[int],
        from_column_id: Optional[int] = None,
        to_column_id: Optional[int] = None,
        **extra,
    ):
        """Append one audit entry. Extra kwargs are merged in."""
        entry = {
            "ts": utc_now(),
            "status": status,
            "actor_id": actor_id,
            "card_id": card_id,
            "from_column_id": from_column_id,
            "to_column_id": to_column_id,
        }
        # Merge extras, filtering None values for cleanliness
        for k, v in extra.items():
            if v is not None:
                entry[k] = v
        entry = {k: v for k, v in entry.items() if v is not None}

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def read_recent(self, n: int = 20) -> List[Dict[str, Any]]:
        """Last n entries, oldest first. Unparseable lines are skipped."""
        if not self.log_path.exists():
            return []
        entries = []
        with open(self.log_path) as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries[-n:]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Notification payload
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class NotificationPayload:
    """Event envelope sent to the notification service."""
    event_type: str
    entity_type: str
    entity_id: str
    channels: List[str] = field(default_factory=list)
    recipients: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def add_context_value(self, key: str, value: Any) -> None:
        self.context[key] = value

    @classmethod
    def from_event(
        cls,
        event: CardMovedEvent,
        channels: Optional[List[str]] = None,
        recipients: Optional[List[str]] = None,
    ) -> "NotificationPayload":
        payload = cls(
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            channels=list(channels or []),
            recipients=list(recipients or []),
            timestamp=event.timestamp.isoformat(),
        )
        payload.add_context_value("card_id", event.card_id)
        payload.add_context_value("pipeline_id", event.pipeline_id)
        payload.add_context_value("from_column_id", event.from_column_id)
        payload.add_context_value("to_column_id", event.to_column_id)
        if event.actor is not None:
            payload.add_context_value("actor_id", event.actor.id)
            payload.add_context_value("actor_name", event.actor.name)
        return payload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "channels": self.channels,
            "recipients": self.recipients,
            "context": self.context,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# HTTP sink
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class HttpNotificationSink:
    """
    Sends card-moved payloads to the notification service.

    Tries the HTTP endpoint first; if it is not configured or unreachable,
    appends the payload to a local JSONL file so nothing is lost.
    """

    def __init__(
        self,
        url: Optional[str],
        fallback_path: Optional[str] = None,
        channels: Optional[List[str]] = None,
        timeout: float = 2.0,
    ):
        self.url = url
        self.fallback_path = Path(fallback_path).expanduser() if fallback_path else None
        self.channels = list(channels or [])
        self.timeout = timeout

    def deliver(self, event: CardMovedEvent) -> bool:
        """Send one event. Returns True if the endpoint accepted it."""
        payload = NotificationPayload.from_event(event, channels=self.channels).to_json()

        if self.url:
            try:
                r = requests.post(
                    self.url,
                    data=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
                if r.ok:
                    logger.debug(f"Notification for card {event.card_id} → {self.url}")
                    return True
                logger.warning(f"Notification endpoint returned {r.status_code} for card {event.card_id}")
            except requests.RequestException as e:
                logger.warning(f"Notification endpoint unreachable: {e}")

        self._write_jsonl(payload)
        return False

    def _write_jsonl(self, payload: str):
        """Append a JSON line to the fallback log file."""
        if self.fallback_path is None:
            logger.error("Notification dropped: no endpoint and no fallback path configured")
            return
        try:
            self.fallback_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.fallback_path, "a") as f:
                f.write(payload + "\n")
        except Exception as e:
            logger.error(f"JSONL write error: {e}")
