"""Respawn cycle metrics tracking and aggregation."""

import copy
import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from .models import CycleOutcome, RespawnAggregateMetrics, RespawnCycleMetrics

logger = logging.getLogger(__name__)

# Completed cycles kept in memory for aggregate calculation
MAX_CYCLE_METRICS_IN_MEMORY = 100


class CycleMetricsTracker:
    """
    Tracks respawn cycles from start to completion and keeps rolling
    aggregate statistics.

    One instance is owned by the host process and shared by every
    controller. In-progress cycles are keyed by session id; the aggregate
    is recomputed synchronously on every completion under a lock so API
    handlers running on worker threads always read a consistent snapshot.
    """

    def __init__(self, max_cycles: int = MAX_CYCLE_METRICS_IN_MEMORY):
        self.max_cycles = max_cycles
        self._lock = threading.Lock()
        self._current: Dict[str, RespawnCycleMetrics] = {}
        self._started_monotonic: Dict[str, float] = {}
        self._recent: List[RespawnCycleMetrics] = []
        self._aggregate = RespawnAggregateMetrics()

    def start_cycle(
        self,
        session_id: str,
        cycle_number: int,
        idle_reason: str,
        idle_detection_ms: int,
        token_count: int,
        completion_confirm_ms: int,
    ) -> RespawnCycleMetrics:
        """
        Open the in-progress record for a session's cycle.

        Raises:
            RuntimeError: if the session already has a cycle in progress
        """
        with self._lock:
            if session_id in self._current:
                raise RuntimeError(
                    f"Cycle {self._current[session_id].cycle_id} still in progress for session {session_id}"
                )
            metrics = RespawnCycleMetrics(
                cycle_id=f"{session_id}:{cycle_number}:{uuid.uuid4().hex[:6]}",
                session_id=session_id,
                cycle_number=cycle_number,
                started_at=datetime.now(),
                idle_reason=idle_reason,
                idle_detection_ms=max(0, int(idle_detection_ms)),
                completion_confirm_ms_used=completion_confirm_ms,
                token_count_at_start=token_count,
            )
            self._current[session_id] = metrics
            self._started_monotonic[session_id] = time.monotonic()
            return copy.deepcopy(metrics)

    def record_step(self, session_id: str, step: str):
        """Append a completed step (e.g. 'clear', 'init', 'update')."""
        with self._lock:
            metrics = self._current.get(session_id)
            if metrics:
                metrics.steps_completed.append(step)

    def mark_clear_skipped(self, session_id: str):
        with self._lock:
            metrics = self._current.get(session_id)
            if metrics:
                metrics.clear_skipped = True

    def get_current_cycle(self, session_id: str) -> Optional[RespawnCycleMetrics]:
        with self._lock:
            metrics = self._current.get(session_id)
            return copy.deepcopy(metrics) if metrics else None

    def has_cycle_in_progress(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._current

    def complete_cycle(
        self,
        session_id: str,
        outcome: CycleOutcome,
        token_count: int = 0,
        error_message: Optional[str] = None,
    ) -> Optional[RespawnCycleMetrics]:
        """
        Finalize the session's in-progress cycle and update the aggregate.

        Returns:
            Copy of the completed record, or None if nothing was in progress
        """
        with self._lock:
            metrics = self._current.pop(session_id, None)
            started = self._started_monotonic.pop(session_id, None)
            if metrics is None:
                return None

            metrics.completed_at = datetime.now()
            metrics.duration_ms = int((time.monotonic() - started) * 1000) if started is not None else 0
            metrics.outcome = outcome
            metrics.error_message = error_message
            metrics.token_count_at_end = token_count

            self._recent.append(metrics)
            if len(self._recent) > self.max_cycles:
                del self._recent[: len(self._recent) - self.max_cycles]

            self._update_aggregate(metrics)
            logger.debug(f"Cycle {metrics.cycle_id} completed: {outcome.value} ({metrics.duration_ms}ms)")
            return copy.deepcopy(metrics)

    def get_aggregate(self) -> RespawnAggregateMetrics:
        with self._lock:
            return copy.deepcopy(self._aggregate)

    def get_recent(self, limit: int = 20) -> List[RespawnCycleMetrics]:
        """Recent completed cycles, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            return [copy.deepcopy(m) for m in reversed(self._recent[-limit:])]

    def reset(self):
        """Clear everything, including in-progress cycles."""
        with self._lock:
            self._current.clear()
            self._started_monotonic.clear()
            self._recent = []
            self._aggregate = RespawnAggregateMetrics()

    def _update_aggregate(self, metrics: RespawnCycleMetrics):
        agg = self._aggregate
        agg.total_cycles += 1

        if metrics.outcome == CycleOutcome.SUCCESS:
            agg.successful_cycles += 1
        elif metrics.outcome == CycleOutcome.STUCK_RECOVERY:
            agg.stuck_recovery_cycles += 1
        elif metrics.outcome == CycleOutcome.BLOCKED:
            agg.blocked_cycles += 1
        elif metrics.outcome == CycleOutcome.ERROR:
            agg.error_cycles += 1
        elif metrics.outcome == CycleOutcome.CANCELLED:
            agg.cancelled_cycles += 1
        else:
            raise ValueError(f"Unhandled cycle outcome: {metrics.outcome}")

        durations = [m.duration_ms for m in self._recent]
        idle_times = [m.idle_detection_ms for m in self._recent]
        if durations:
            agg.avg_cycle_duration_ms = round(sum(durations) / len(durations))
            agg.avg_idle_detection_ms = round(sum(idle_times) / len(idle_times))
            ordered = sorted(durations)
            agg.p90_cycle_duration_ms = ordered[int(len(ordered) * 0.9)]

        agg.success_rate = round(agg.successful_cycles / agg.total_cycles * 100) if agg.total_cycles else 100
        agg.last_updated_at = datetime.now()
