"""Compliance audit trail for migration and release operations.

Records operator-visible events (migrations applied, compliance data
initialised, promotions performed or rejected) to an audit sink.

Emission is a best-effort side channel: core operations call
``emit_best_effort``, which never lets a sink failure escape.

Storage: Append-only JSONL format for efficient querying.

Usage:
    trail = AuditTrail(base_dir)
    emit_best_effort(trail, ComplianceEvent.create(
        "promotion.staging", environment="staging", actor="ci",
        details={"version": "0.2.0"},
    ))

    for event in trail.query(event_type="promotion.staging"):
        print(f"{event.timestamp}: {event.actor} {event.details}")
"""

import json
import logging
import threading
import uuid
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Default storage location
DEFAULT_AUDIT_DIR = ".tachyon/audit"
DEFAULT_LOG_FILE = "events.jsonl"


@dataclass
class ComplianceEvent:
    """A single audit event.

    Attributes:
        id: Unique event identifier
        event_type: Dotted event type (e.g. migration.applied, promotion.production)
        timestamp: ISO-8601 UTC timestamp
        environment: Target environment name
        actor: Who performed the operation
        status: Outcome (compliant, rejected, failed)
        details: Additional structured details
    """

    id: str
    event_type: str
    timestamp: str
    environment: str = ""
    actor: str = ""
    status: str = "compliant"
    details: dict = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        environment: str = "",
        actor: str = "",
        status: str = "compliant",
        details: Optional[dict[str, Any]] = None,
    ) -> "ComplianceEvent":
        """Build an event stamped with a fresh id and the current time."""
        return cls(
            id=f"evt-{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            environment=environment,
            actor=actor,
            status=status,
            details=details or {},
        )

    def to_dict(self) -> dict:
        """Serialize for JSONL storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ComplianceEvent":
        """Deserialize from JSONL."""
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        return cls(**filtered)


@runtime_checkable
class AuditSink(Protocol):
    """Destination for compliance events."""

    def emit(self, event: ComplianceEvent) -> None: ...


@dataclass
class AuditConfig:
    """Configuration for audit trail.

    Attributes:
        audit_dir: Directory for audit logs, relative to the base directory
        log_file: Name of the log file
        enabled: Whether audit logging is enabled
    """

    audit_dir: str = DEFAULT_AUDIT_DIR
    log_file: str = DEFAULT_LOG_FILE
    enabled: bool = True


class AuditTrail:
    """JSONL audit sink.

    Thread-safe append-only logging of compliance events.
    """

    def __init__(
        self,
        base_dir: Path | str,
        config: Optional[AuditConfig] = None,
    ):
        """Initialize audit trail.

        Args:
            base_dir: Directory the audit directory is created under
            config: Audit configuration
        """
        self.base_dir = Path(base_dir)
        self.config = config or AuditConfig()

        self.audit_dir = self.base_dir / self.config.audit_dir
        self.log_file = self.audit_dir / self.config.log_file

        self._lock = threading.Lock()

    def emit(self, event: ComplianceEvent) -> None:
        """Append an event to the audit log.

        Args:
            event: Event to record

        Raises:
            OSError: If the log file cannot be written
        """
        if not self.config.enabled:
            return

        with self._lock:
            self.audit_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")

        logger.debug(f"Audit event recorded: {event.id} ({event.event_type})")

    def query(
        self,
        event_type: Optional[str] = None,
        environment: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ComplianceEvent]:
        """Query audit events.

        Args:
            event_type: Filter by event type
            environment: Filter by environment
            limit: Maximum number of events to return

        Returns:
            List of matching events in write order
        """
        events = []

        for event in self._iter_events():
            if event_type and event.event_type != event_type:
                continue
            if environment and event.environment != environment:
                continue

            events.append(event)

            if limit and len(events) >= limit:
                break

        return events

    def _iter_events(self) -> Iterator[ComplianceEvent]:
        """Iterate over all events in the log file."""
        if not self.log_file.exists():
            return

        with open(self.log_file) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield ComplianceEvent.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning(f"Failed to parse audit event: {e}")


def emit_best_effort(sink: Optional[AuditSink], event: ComplianceEvent) -> bool:
    """Emit an event, logging and discarding any sink failure.

    Args:
        sink: Audit sink (None disables emission)
        event: Event to emit

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False

    try:
        sink.emit(event)
        return True
    except Exception as e:
        logger.warning(f"Audit emission failed for {event.event_type} (ignored): {e}")
        return False
