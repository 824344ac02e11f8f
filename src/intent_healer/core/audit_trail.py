"""
Audit trail for heal decisions and source updates.

Every heal attempt, provider failure, circuit transition and source edit is
recorded as an AuditEvent. Events are kept in a bounded in-memory ring and,
when a storage path is configured, appended to daily JSONL files.
"""

import json
import threading
import uuid
from collections import deque
from datetime import datetime
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any
from enum import Enum
from pathlib import Path
import logging

from .logging_config import sanitize_error_message
from .models.healing_models import FailureContext, HealResult, ValidatedHeal


class AuditEventType(Enum):
    """Types of audit events."""
    HEAL_ATTEMPTED = "heal_attempted"
    HEAL_SUCCEEDED = "heal_succeeded"
    HEAL_REFUSED = "heal_refused"
    HEAL_FAILED = "heal_failed"
    PROVIDER_FAILED = "provider_failed"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    BUDGET_EXCEEDED = "budget_exceeded"
    HEALS_VALIDATED = "heals_validated"
    HEALS_DISCARDED = "heals_discarded"
    SOURCE_UPDATED = "source_updated"
    SOURCE_ROLLED_BACK = "source_rolled_back"
    CONFIGURATION_LOADED = "configuration_loaded"


@dataclass
class AuditEvent:
    """A single audit event record."""
    event_id: str
    event_type: AuditEventType
    timestamp: datetime
    run_id: Optional[str]
    scenario: Optional[str]
    component: str
    message: str
    details: Dict[str, Any]
    success: Optional[bool] = None
    duration: Optional[float] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit event to dictionary."""
        data = asdict(self)
        data['event_type'] = self.event_type.value
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create audit event from dictionary."""
        data = data.copy()
        data['event_type'] = AuditEventType(data['event_type'])
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)


class AuditTrail:
    """Audit trail manager for heal operations."""

    def __init__(self, storage_path: Optional[str] = None, max_recent_events: int = 1000):
        """
        Initialize audit trail.

        Args:
            storage_path: Directory for daily audit files; memory only when None
            max_recent_events: Size of the in-memory ring
        """
        self.storage_path = Path(storage_path) if storage_path else None
        if self.storage_path:
            self.storage_path.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger("healer.audit")
        self._lock = threading.Lock()
        self._recent_events: deque = deque(maxlen=max_recent_events)

    def log_event(self, event_type: AuditEventType, component: str, message: str,
                  run_id: Optional[str] = None, scenario: Optional[str] = None,
                  details: Optional[Dict[str, Any]] = None, success: Optional[bool] = None,
                  duration: Optional[float] = None, error_message: Optional[str] = None) -> str:
        """
        Log an audit event.

        Returns:
            Event ID
        """
        event = AuditEvent(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=datetime.now(),
            run_id=run_id,
            scenario=scenario,
            component=component,
            message=message,
            details=details or {},
            success=success,
            duration=duration,
            error_message=sanitize_error_message(error_message) if error_message else None
        )

        with self._lock:
            self._recent_events.append(event)

        self.logger.info(message, extra={
            'operation': event_type.value,
            'run_id': run_id,
            'scenario': scenario,
            'success': success,
            'duration': duration,
            'metadata': event.details
        })

        if self.storage_path:
            self._save_event_to_file(event)

        return event.event_id

    def log_heal_attempted(self, failure: FailureContext, fingerprint: str) -> str:
        return self.log_event(
            event_type=AuditEventType.HEAL_ATTEMPTED,
            component="engine",
            message=f"Heal attempted for step '{failure.step_text}'",
            run_id=failure.run_id,
            scenario=failure.scenario,
            details={
                "fingerprint": fingerprint,
                "original_locator": failure.original_locator,
                "page_url": failure.page_url,
                "failure_kind": failure.failure_kind.value
            }
        )

    def log_heal_result(self, failure: FailureContext, result: HealResult) -> str:
        """Log the terminal outcome of a heal attempt."""
        event_types = {
            "success": AuditEventType.HEAL_SUCCEEDED,
            "refused": AuditEventType.HEAL_REFUSED,
            "failed": AuditEventType.HEAL_FAILED,
        }
        return self.log_event(
            event_type=event_types[result.outcome.value],
            component="engine",
            message=f"Heal {result.outcome.value}: {result.healed_locator or result.failure_reason}",
            run_id=failure.run_id,
            scenario=failure.scenario,
            success=result.is_success,
            duration=result.duration_seconds,
            error_message=result.failure_reason,
            details={
                "heal_id": result.heal_id,
                "reason_code": result.reason_code.value,
                "confidence": result.confidence,
                "original_locator": failure.original_locator,
                "healed_locator": result.healed_locator,
                "from_cache": result.from_cache,
                "fingerprint": result.fingerprint
            }
        )

    def log_provider_failure(self, provider: str, error: str, attempt: int) -> str:
        return self.log_event(
            event_type=AuditEventType.PROVIDER_FAILED,
            component="orchestrator",
            message=f"Provider '{provider}' failed on attempt {attempt}",
            success=False,
            error_message=error,
            details={"provider": provider, "attempt": attempt}
        )

    def log_circuit_change(self, provider: str, opened: bool, reason: str = "") -> str:
        return self.log_event(
            event_type=AuditEventType.CIRCUIT_OPENED if opened else AuditEventType.CIRCUIT_CLOSED,
            component="orchestrator",
            message=f"Circuit for '{provider}' {'opened' if opened else 'closed'}",
            details={"provider": provider, "reason": reason}
        )

    def log_budget_exceeded(self, limit_name: str, message: str) -> str:
        return self.log_event(
            event_type=AuditEventType.BUDGET_EXCEEDED,
            component="orchestrator",
            message=message,
            success=False,
            details={"limit": limit_name}
        )

    def log_run_finished(self, run_id: str, passed: bool, validated: List[ValidatedHeal],
                         discarded_count: int, deferred_count: int) -> str:
        """Log promotion or discard of a run's pending heals."""
        return self.log_event(
            event_type=AuditEventType.HEALS_VALIDATED if passed else AuditEventType.HEALS_DISCARDED,
            component="registry",
            message=(f"Run {run_id} passed: {len(validated)} heals validated, {deferred_count} deferred"
                     if passed else f"Run {run_id} failed: {discarded_count} heals discarded"),
            run_id=run_id,
            success=passed,
            details={
                "validated": [heal.heal_id for heal in validated],
                "discarded_count": discarded_count,
                "deferred_count": deferred_count
            }
        )

    def log_source_update(self, file_path: str, old_locator: str, new_locator: str,
                          success: bool, backup_path: Optional[str] = None,
                          error_message: Optional[str] = None) -> str:
        return self.log_event(
            event_type=AuditEventType.SOURCE_UPDATED,
            component="source_updater",
            message=f"Updated locator in {file_path}",
            success=success,
            error_message=error_message,
            details={
                "file_path": file_path,
                "old_locator": old_locator,
                "new_locator": new_locator,
                "backup_path": backup_path
            }
        )

    def log_source_rollback(self, file_path: str, backup_path: str, success: bool,
                            error_message: Optional[str] = None) -> str:
        return self.log_event(
            event_type=AuditEventType.SOURCE_ROLLED_BACK,
            component="source_updater",
            message=f"Rolled back {file_path} from backup {backup_path}",
            success=success,
            error_message=error_message,
            details={"file_path": file_path, "backup_path": backup_path}
        )

    def log_configuration_loaded(self, source: str, enabled: bool, providers: List[str]) -> str:
        return self.log_event(
            event_type=AuditEventType.CONFIGURATION_LOADED,
            component="runtime",
            message=f"Healing configuration loaded from {source}",
            details={"enabled": enabled, "providers": providers}
        )

    def get_recent_events(self, limit: int = 100) -> List[AuditEvent]:
        """Get recent audit events, oldest first."""
        with self._lock:
            events = list(self._recent_events)
        return events[-limit:] if limit else events

    def get_events_by_run(self, run_id: str) -> List[AuditEvent]:
        with self._lock:
            return [event for event in self._recent_events if event.run_id == run_id]

    def get_events_by_type(self, event_type: AuditEventType, limit: int = 100) -> List[AuditEvent]:
        with self._lock:
            events = [event for event in self._recent_events if event.event_type == event_type]
        return events[-limit:] if limit else events

    def export_events(self) -> str:
        """Export the in-memory events as JSON."""
        return json.dumps([event.to_dict() for event in self.get_recent_events(limit=0)], indent=2)

    def _save_event_to_file(self, event: AuditEvent):
        """Append audit event to the daily log file."""
        date_str = event.timestamp.strftime("%Y-%m-%d")
        file_path = self.storage_path / f"audit_{date_str}.jsonl"

        try:
            with self._lock, open(file_path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(event.to_dict(), default=str) + '\n')
        except OSError as e:
            self.logger.error(f"Failed to save audit event to file: {e}")
