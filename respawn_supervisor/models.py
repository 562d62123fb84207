"""Data models for the respawn supervisor."""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional, Union
import uuid

from .errors import ConfigValidationError


class SessionStatus(Enum):
    """Session lifecycle status."""
    RUNNING = "running"  # Actively working
    IDLE = "idle"        # Waiting for input
    STOPPED = "stopped"  # Terminated


class RespawnState(Enum):
    """Respawn controller states."""
    WATCHING = "watching"
    CONFIRMING_IDLE = "confirming_idle"
    AI_CHECKING = "ai_checking"
    SENDING_UPDATE = "sending_update"
    WAITING_UPDATE = "waiting_update"
    STOPPED = "stopped"


class CheckStatus(Enum):
    """Verdict checker status."""
    READY = "ready"
    CHECKING = "checking"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"
    ERROR = "error"


class CycleOutcome(Enum):
    """How a respawn cycle ended."""
    SUCCESS = "success"
    STUCK_RECOVERY = "stuck_recovery"
    BLOCKED = "blocked"
    ERROR = "error"
    CANCELLED = "cancelled"


class HealthStatus(Enum):
    """Overall health bucket."""
    EXCELLENT = "excellent"
    GOOD = "good"
    DEGRADED = "degraded"
    CRITICAL = "critical"


# Verdict strings shared by every checker kind
VERDICT_ERROR = "ERROR"
VERDICT_CANCELLED = "CANCELLED"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_duration(name: str, value) -> None:
    if not _is_number(value):
        raise ConfigValidationError(name, f"expected a number of milliseconds, got {value!r}")
    if value < 0:
        raise ConfigValidationError(name, f"must be non-negative, got {value}")


def _require_bool(name: str, value) -> None:
    if not isinstance(value, bool):
        raise ConfigValidationError(name, f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class CheckerConfig:
    """Configuration for one verdict checker (idle or plan)."""
    enabled: bool = True
    model: str = "claude-opus-4-5-20251101"
    max_context_chars: int = 16000
    check_timeout_ms: int = 90000
    cooldown_ms: int = 180000
    error_cooldown_ms: int = 60000
    max_consecutive_errors: int = 3
    poll_interval_ms: int = 500

    def __post_init__(self):
        _require_bool("enabled", self.enabled)
        if not isinstance(self.model, str) or not self.model.strip():
            raise ConfigValidationError("model", "must be a non-empty string")
        for name in ("check_timeout_ms", "cooldown_ms", "error_cooldown_ms"):
            _require_duration(name, getattr(self, name))
        if not isinstance(self.max_context_chars, int) or self.max_context_chars < 1:
            raise ConfigValidationError("max_context_chars", "must be a positive integer")
        if not isinstance(self.max_consecutive_errors, int) or self.max_consecutive_errors < 1:
            raise ConfigValidationError("max_consecutive_errors", "must be a positive integer")
        _require_duration("poll_interval_ms", self.poll_interval_ms)
        if self.poll_interval_ms == 0:
            raise ConfigValidationError("poll_interval_ms", "must be greater than zero")

    def to_dict(self) -> dict:
        return asdict(self)

    def merged(self, partial: Optional[dict]) -> "CheckerConfig":
        """Return a copy with `partial` applied; unknown keys are rejected."""
        if not partial:
            return self
        known = {f.name for f in fields(self)}
        for key in partial:
            if key not in known:
                raise ConfigValidationError(key, "unknown checker config field")
        return CheckerConfig(**{**self.to_dict(), **partial})

    @classmethod
    def from_dict(cls, data: Optional[dict], defaults: Optional["CheckerConfig"] = None) -> "CheckerConfig":
        base = defaults or cls()
        if not data:
            return base
        return base.merged({k: v for k, v in data.items() if k in cls.__dataclass_fields__})


DEFAULT_IDLE_CHECK_CONFIG = CheckerConfig()

DEFAULT_PLAN_CHECK_CONFIG = CheckerConfig(
    max_context_chars=8000,
    check_timeout_ms=60000,
    cooldown_ms=30000,
    error_cooldown_ms=30000,
)

_CHECKER_FIELDS = {
    "ai_idle_check": DEFAULT_IDLE_CHECK_CONFIG,
    "ai_plan_check": DEFAULT_PLAN_CHECK_CONFIG,
}

_DURATION_FIELDS = (
    "idle_timeout_ms",
    "completion_confirm_ms",
    "no_output_timeout_ms",
    "inter_step_delay_ms",
    "resume_timeout_ms",
    "auto_accept_delay_ms",
    "adaptive_min_confirm_ms",
    "adaptive_max_confirm_ms",
)

_BOOL_FIELDS = (
    "enabled",
    "send_clear",
    "send_init",
    "skip_clear_when_low_context",
    "auto_accept_prompts",
    "adaptive_timing_enabled",
)


@dataclass(frozen=True)
class RespawnConfig:
    """
    Immutable respawn configuration snapshot.

    Replaced wholesale on update via merged(); validation happens in
    __post_init__ so an invalid update never produces a config object.
    """
    enabled: bool = True
    # Timing windows
    idle_timeout_ms: int = 10000  # Prompt-pattern fallback idle window
    completion_confirm_ms: int = 10000
    no_output_timeout_ms: int = 30000
    inter_step_delay_ms: int = 1000
    resume_timeout_ms: int = 60000
    # Control inputs
    send_clear: bool = True
    send_init: bool = True
    update_prompt: str = "update all the docs and CLAUDE.md"
    kickstart_prompt: Optional[str] = None
    skip_clear_when_low_context: bool = True
    skip_clear_threshold_percent: float = 30
    # Auto-accept of plan approval menus
    auto_accept_prompts: bool = True
    auto_accept_delay_ms: int = 8000
    # Adaptive completion-confirm timing
    adaptive_timing_enabled: bool = True
    adaptive_min_confirm_ms: int = 5000
    adaptive_max_confirm_ms: int = 60000
    # Verdict checkers
    ai_idle_check: CheckerConfig = DEFAULT_IDLE_CHECK_CONFIG
    ai_plan_check: CheckerConfig = DEFAULT_PLAN_CHECK_CONFIG
    # Auto-stop
    duration_minutes: Optional[int] = None

    def __post_init__(self):
        for name in _DURATION_FIELDS:
            _require_duration(name, getattr(self, name))
        for name in _BOOL_FIELDS:
            _require_bool(name, getattr(self, name))
        if not isinstance(self.update_prompt, str):
            raise ConfigValidationError("update_prompt", "must be a string")
        if self.kickstart_prompt is not None and not isinstance(self.kickstart_prompt, str):
            raise ConfigValidationError("kickstart_prompt", "must be a string or null")
        if not _is_number(self.skip_clear_threshold_percent) or not 0 <= self.skip_clear_threshold_percent <= 100:
            raise ConfigValidationError("skip_clear_threshold_percent", "must be between 0 and 100")
        if self.adaptive_min_confirm_ms > self.adaptive_max_confirm_ms:
            raise ConfigValidationError(
                "adaptive_min_confirm_ms", "must not exceed adaptive_max_confirm_ms"
            )
        for name in _CHECKER_FIELDS:
            if not isinstance(getattr(self, name), CheckerConfig):
                raise ConfigValidationError(name, "must be a checker config")
        if self.duration_minutes is not None:
            if not _is_number(self.duration_minutes) or self.duration_minutes < 0:
                raise ConfigValidationError("duration_minutes", "must be a non-negative number or null")

    def to_dict(self) -> dict:
        """Convert config to dictionary for JSON serialization."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for name in _CHECKER_FIELDS:
            data[name] = data[name].to_dict()
        return data

    def merged(self, partial: Optional[dict]) -> "RespawnConfig":
        """
        Return a new config with a partial update applied.

        Checker sub-configs merge key by key. Unknown fields and invalid
        values raise ConfigValidationError; self is never modified.
        """
        if not partial:
            return self
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in partial.items():
            if key not in values:
                raise ConfigValidationError(key, "unknown respawn config field")
            if key in _CHECKER_FIELDS:
                if value is None:
                    continue
                if isinstance(value, CheckerConfig):
                    values[key] = value
                elif isinstance(value, dict):
                    values[key] = values[key].merged(value)
                else:
                    raise ConfigValidationError(key, "must be an object")
            else:
                values[key] = value
        return RespawnConfig(**values)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RespawnConfig":
        """Create config from persisted data; unknown keys are dropped."""
        if not data:
            return cls()
        values = {}
        for key, value in data.items():
            if key not in cls.__dataclass_fields__:
                continue
            if key in _CHECKER_FIELDS:
                values[key] = CheckerConfig.from_dict(value, defaults=_CHECKER_FIELDS[key])
            else:
                values[key] = value
        return cls(**values)


@dataclass
class CheckResult:
    """Outcome of one verdict checker call."""
    verdict: str  # Positive/negative keyword, VERDICT_ERROR or VERDICT_CANCELLED
    reasoning: str
    duration_ms: int = 0

    @property
    def is_error(self) -> bool:
        return self.verdict == VERDICT_ERROR

    @property
    def is_cancelled(self) -> bool:
        return self.verdict == VERDICT_CANCELLED

    def to_dict(self) -> dict:
        return {"verdict": self.verdict, "reasoning": self.reasoning, "duration_ms": self.duration_ms}


@dataclass
class CheckerState:
    """Read-only snapshot of a verdict checker."""
    status: CheckStatus
    last_verdict: Optional[str] = None
    last_reasoning: Optional[str] = None
    last_check_duration_ms: Optional[int] = None
    cooldown_ends_at: Optional[datetime] = None
    consecutive_errors: int = 0
    total_checks: int = 0
    disabled_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "last_verdict": self.last_verdict,
            "last_reasoning": self.last_reasoning,
            "last_check_duration_ms": self.last_check_duration_ms,
            "cooldown_ends_at": self.cooldown_ends_at.isoformat() if self.cooldown_ends_at else None,
            "consecutive_errors": self.consecutive_errors,
            "total_checks": self.total_checks,
            "disabled_reason": self.disabled_reason,
        }


@dataclass
class RespawnCycleMetrics:
    """Record of one completed respawn cycle."""
    cycle_id: str
    session_id: str
    cycle_number: int
    started_at: datetime
    idle_reason: str
    idle_detection_ms: int
    completion_confirm_ms_used: int
    token_count_at_start: int = 0
    steps_completed: List[str] = field(default_factory=list)
    clear_skipped: bool = False
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    token_count_at_end: int = 0
    outcome: Optional[CycleOutcome] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "session_id": self.session_id,
            "cycle_number": self.cycle_number,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "idle_reason": self.idle_reason,
            "idle_detection_ms": self.idle_detection_ms,
            "steps_completed": list(self.steps_completed),
            "clear_skipped": self.clear_skipped,
            "token_count_at_start": self.token_count_at_start,
            "token_count_at_end": self.token_count_at_end,
            "completion_confirm_ms_used": self.completion_confirm_ms_used,
            "outcome": self.outcome.value if self.outcome else None,
            "error_message": self.error_message,
        }


@dataclass
class RespawnAggregateMetrics:
    """Rolling statistics over completed cycles."""
    total_cycles: int = 0
    successful_cycles: int = 0
    stuck_recovery_cycles: int = 0
    blocked_cycles: int = 0
    error_cycles: int = 0
    cancelled_cycles: int = 0
    avg_cycle_duration_ms: int = 0
    avg_idle_detection_ms: int = 0
    p90_cycle_duration_ms: int = 0
    success_rate: int = 100
    last_updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_updated_at"] = self.last_updated_at.isoformat()
        return data


@dataclass
class HealthScore:
    """Composite health score for one controller."""
    score: int
    status: HealthStatus
    components: dict
    summary: str
    recommendations: List[str]
    calculated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "status": self.status.value,
            "components": dict(self.components),
            "summary": self.summary,
            "recommendations": list(self.recommendations),
            "calculated_at": self.calculated_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Controller outcome events. Listeners receive exactly one of these types.
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StateChanged:
    kind: ClassVar[str] = "stateChanged"
    session_id: str
    state: RespawnState
    previous: RespawnState

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "state": self.state.value, "previous": self.previous.value}


@dataclass(frozen=True)
class RespawnCycleStarted:
    kind: ClassVar[str] = "respawnCycleStarted"
    session_id: str
    cycle_number: int
    reason: str

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "cycle_number": self.cycle_number, "reason": self.reason}


@dataclass(frozen=True)
class StepSent:
    kind: ClassVar[str] = "stepSent"
    session_id: str
    step: str
    text: str

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "step": self.step, "text": self.text}


@dataclass(frozen=True)
class RespawnBlocked:
    kind: ClassVar[str] = "respawnBlocked"
    session_id: str
    reason: str  # "active_teammates" or "elicitation_dialog"
    details: str

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "reason": self.reason, "details": self.details}


@dataclass(frozen=True)
class RespawnCycleCompleted:
    kind: ClassVar[str] = "respawnCycleCompleted"
    session_id: str
    metrics: RespawnCycleMetrics

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "metrics": self.metrics.to_dict()}


@dataclass(frozen=True)
class AutoAcceptSent:
    kind: ClassVar[str] = "autoAcceptSent"
    session_id: str
    reason: str

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "reason": self.reason}


RespawnEvent = Union[
    StateChanged,
    RespawnCycleStarted,
    StepSent,
    RespawnBlocked,
    RespawnCycleCompleted,
    AutoAcceptSent,
]


@dataclass
class Session:
    """A tmux-hosted agent session under supervision (persisted form)."""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str = ""
    working_dir: str = ""
    tmux_session: str = ""
    log_file: str = ""
    status: SessionStatus = SessionStatus.RUNNING
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    respawn_enabled: bool = False
    respawn_config: Optional[dict] = None  # Persisted RespawnConfig.to_dict()

    def __post_init__(self):
        if not self.name:
            self.name = f"claude-{self.id}"
        if not self.tmux_session:
            self.tmux_session = f"claude-{self.id}"

    def to_dict(self) -> dict:
        """Convert session to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "working_dir": self.working_dir,
            "tmux_session": self.tmux_session,
            "log_file": self.log_file,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "respawn_enabled": self.respawn_enabled,
            "respawn_config": self.respawn_config,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create session from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            working_dir=data.get("working_dir", ""),
            tmux_session=data.get("tmux_session", ""),
            log_file=data.get("log_file", ""),
            status=SessionStatus(data.get("status", "running")),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
            last_activity=datetime.fromisoformat(data["last_activity"]) if data.get("last_activity") else datetime.now(),
            respawn_enabled=data.get("respawn_enabled", False),
            respawn_config=data.get("respawn_config"),
        )
