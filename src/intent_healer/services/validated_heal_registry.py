"""Two-phase bookkeeping of heals: pending during a run, validated after it passes."""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..core.audit_trail import AuditTrail
from ..core.models.healing_models import (
    FailureContext,
    HealResult,
    HealStatus,
    PendingHeal,
    RunSummary,
    ValidatedHeal
)


logger = logging.getLogger("healer.registry")


class ValidatedHealRegistry:
    """Tracks pending heals per test run and promotes or discards them.

    Pending heals are keyed by (run id, source location); a second heal of the
    same location in the same run replaces the first. Finishing a run drains
    its pending heals exactly once.
    """

    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit
        self._lock = threading.RLock()
        self._pending: Dict[str, Dict[str, PendingHeal]] = {}
        self._run_started_at: Dict[str, datetime] = {}
        self._finished_runs: Set[str] = set()
        self._deferred: Dict[str, PendingHeal] = {}
        self._validated: List[ValidatedHeal] = []
        self._discarded_count = 0

    def on_run_started(self, run_id: str) -> None:
        with self._lock:
            self._run_started_at.setdefault(run_id, datetime.now())
            self._pending.setdefault(run_id, {})
            self._finished_runs.discard(run_id)
        logger.debug(f"Run {run_id} started")

    def record_heal(self, failure: FailureContext, result: HealResult) -> Optional[PendingHeal]:
        """Record a successful heal as pending for the failure's run."""
        if not result.is_success or not result.healed_locator:
            return None

        heal = PendingHeal(
            heal_id=result.heal_id,
            run_id=failure.run_id,
            original_locator=failure.original_locator,
            healed_locator=result.healed_locator,
            confidence=result.confidence,
            scenario=failure.scenario,
            location=failure.source_location,
            reasoning=result.decision.reasoning if result.decision else ""
        )
        key = heal.location.key() if heal.location else f"heal:{heal.heal_id}"

        with self._lock:
            if failure.run_id in self._finished_runs:
                logger.warning(f"Ignoring heal {heal.heal_id} recorded after run {failure.run_id} finished")
                return None
            self._run_started_at.setdefault(failure.run_id, datetime.now())
            self._pending.setdefault(failure.run_id, {})[key] = heal

        logger.debug(f"Recorded pending heal {heal.heal_id} for run {failure.run_id}")
        return heal

    def on_run_finished(self, run_id: str, passed: bool, min_confidence: float) -> RunSummary:
        """Promote the run's pending heals when it passed, discard them otherwise.

        Heals below ``min_confidence`` from a passing run stay pending as
        deferred. Each later passing run reconsiders the deferred heals that
        share a source location or scenario with it; ``reconsider`` promotes
        one explicitly.
        """
        with self._lock:
            pending = list(self._pending.pop(run_id, {}).values())
            self._run_started_at.pop(run_id, None)
            self._finished_runs.add(run_id)

            summary = RunSummary(run_id=run_id, passed=passed)
            if passed:
                confirmed = self._settle_deferred_locked(pending, min_confidence, summary)
                for heal in pending:
                    if heal.confidence >= min_confidence or heal.heal_id in confirmed:
                        heal.status = HealStatus.VALIDATED
                        summary.validated.append(heal.to_validated())
                    else:
                        heal.deferred = True
                        self._deferred[heal.heal_id] = heal
                        summary.deferred.append(heal)
                self._validated.extend(summary.validated)
            else:
                for heal in pending:
                    heal.status = HealStatus.DISCARDED
                summary.discarded = pending
                self._discarded_count += len(pending)

        if passed:
            logger.info(f"Run {run_id} passed: {len(summary.validated)} heals validated, "
                        f"{len(summary.deferred)} deferred")
        elif pending:
            logger.info(f"Run {run_id} failed: discarded {len(pending)} pending heals")
        if self.audit and pending:
            self.audit.log_run_finished(run_id, passed, summary.validated,
                                        len(summary.discarded), len(summary.deferred))
        return summary

    def _settle_deferred_locked(self, pending: List[PendingHeal], min_confidence: float,
                                summary: RunSummary) -> Set[str]:
        """Reconsider deferred heals related to a passing run.

        A deferred heal whose location was healed again with the same
        replacement is confirmed, and the run's newer heal stands for both. A
        different replacement supersedes it. Deferred heals of the run's
        scenarios are promoted once they meet ``min_confidence``.

        Returns:
            Ids of the run's heals confirmed by an earlier deferred heal
        """
        by_location = {heal.location.key(): heal for heal in pending if heal.location}
        scenarios = {heal.scenario for heal in pending}
        confirmed: Set[str] = set()

        for heal_id, deferred in list(self._deferred.items()):
            current = by_location.get(deferred.location.key()) if deferred.location else None
            if current is not None:
                del self._deferred[heal_id]
                deferred.deferred = False
                if current.healed_locator == deferred.healed_locator:
                    deferred.status = HealStatus.VALIDATED
                    confirmed.add(current.heal_id)
                    logger.info(f"Deferred heal {heal_id} confirmed by run {current.run_id}")
                else:
                    deferred.status = HealStatus.DISCARDED
                    summary.discarded.append(deferred)
                    self._discarded_count += 1
                    logger.info(f"Deferred heal {heal_id} superseded by heal {current.heal_id}")
            elif deferred.scenario in scenarios and deferred.confidence >= min_confidence:
                del self._deferred[heal_id]
                deferred.deferred = False
                deferred.status = HealStatus.VALIDATED
                summary.validated.append(deferred.to_validated())
                logger.info(f"Deferred heal {heal_id} promoted to validated")
        return confirmed

    def reconsider(self, heal_id: str, min_confidence: Optional[float] = None) -> Optional[ValidatedHeal]:
        """Promote a deferred heal.

        Args:
            heal_id: Deferred heal to promote
            min_confidence: Threshold to apply; ``None`` promotes unconditionally

        Returns:
            The validated heal, or None when unknown or still below threshold
        """
        with self._lock:
            heal = self._deferred.get(heal_id)
            if heal is None:
                return None
            if min_confidence is not None and heal.confidence < min_confidence:
                return None
            del self._deferred[heal_id]
            heal.status = HealStatus.VALIDATED
            heal.deferred = False
            validated = heal.to_validated()
            self._validated.append(validated)
        logger.info(f"Deferred heal {heal_id} promoted to validated")
        return validated

    def expire_stale(self, max_age_seconds: float, now: Optional[datetime] = None) -> List[PendingHeal]:
        """Discard pending heals of runs that never finished within ``max_age_seconds``."""
        now = now or datetime.now()
        cutoff = now - timedelta(seconds=max_age_seconds)
        expired: List[PendingHeal] = []
        with self._lock:
            for run_id, started in list(self._run_started_at.items()):
                if started > cutoff:
                    continue
                heals = list(self._pending.pop(run_id, {}).values())
                del self._run_started_at[run_id]
                self._finished_runs.add(run_id)
                for heal in heals:
                    heal.status = HealStatus.DISCARDED
                expired.extend(heals)
            self._discarded_count += len(expired)
        if expired:
            logger.info(f"Discarded {len(expired)} pending heals from stale runs")
        return expired

    def pending_heals(self, run_id: Optional[str] = None) -> List[PendingHeal]:
        with self._lock:
            if run_id is not None:
                return list(self._pending.get(run_id, {}).values())
            return [heal for heals in self._pending.values() for heal in heals.values()]

    def deferred_heals(self) -> List[PendingHeal]:
        with self._lock:
            return list(self._deferred.values())

    def validated_heals(self, run_id: Optional[str] = None) -> List[ValidatedHeal]:
        with self._lock:
            if run_id is None:
                return list(self._validated)
            return [heal for heal in self._validated if heal.run_id == run_id]

    def heals_for_auto_update(self, min_confidence: float) -> List[ValidatedHeal]:
        with self._lock:
            return [heal for heal in self._validated
                    if heal.can_auto_update and heal.meets_confidence_threshold(min_confidence)
                    and heal.applied_at is None]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "pending": sum(len(heals) for heals in self._pending.values()),
                "active_runs": len(self._pending),
                "deferred": len(self._deferred),
                "validated": len(self._validated),
                "applied": sum(1 for heal in self._validated if heal.applied_at is not None),
                "discarded": self._discarded_count
            }

    def save_validated(self, path: str) -> int:
        """Write validated heals as a JSON list. Returns the number written."""
        with self._lock:
            payload = [heal.to_dict() for heal in self._validated]
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".validated_", suffix=".json", dir=str(target.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_name, target)
        logger.info(f"Saved {len(payload)} validated heals to {target}")
        return len(payload)

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()
            self._run_started_at.clear()
            self._finished_runs.clear()
            self._deferred.clear()
            self._validated.clear()
            self._discarded_count = 0
