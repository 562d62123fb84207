"""
Respawn controller: per-session state machine that detects when the agent
has finished its work, clears and re-primes it, and sends the next prompt.

States:
    stopped -> watching -> confirming_idle -> ai_checking -> (gate check)
            -> sending_update -> waiting_update -> watching

The gate check between idle confirmation and a cycle is synchronous and
never a visible state. Side effects leave the controller only as outcome
events delivered to listeners registered with add_listener().
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .adaptive_timing import AdaptiveTiming
from .health import HealthInputs, calculate_health_score, should_skip_clear
from .metrics import CycleMetricsTracker
from .models import (
    AutoAcceptSent,
    CheckStatus,
    CycleOutcome,
    HealthScore,
    RespawnBlocked,
    RespawnConfig,
    RespawnCycleCompleted,
    RespawnCycleStarted,
    RespawnEvent,
    RespawnState,
    StateChanged,
    StepSent,
)
from .patterns import (
    extract_token_count,
    has_prompt_pattern,
    has_working_pattern,
    is_completion_message,
    looks_like_elicitation,
    looks_like_selection_menu,
    strip_ansi,
)
from .session import SupervisedSession, TeamGate
from .tmux_controller import TmuxController
from .verdict_checker import IdleChecker, InvocationRunner, PlanChecker

logger = logging.getLogger(__name__)

EventListener = Callable[[RespawnEvent], None]

# Stripped terminal output kept as checker context
TERMINAL_BUFFER_CHARS = 64000

# Tail of the previous chunk kept to catch patterns split across chunks
CARRY_CHARS = 64

# Tail inspected for selection menus and question prompts
MENU_TAIL_CHARS = 2000

# Timer slots; arming a slot cancels whatever it held
DEBOUNCE = "debounce"
WATCHDOG = "watchdog"
PROMPT_FALLBACK = "prompt_fallback"
AUTO_ACCEPT = "auto_accept"
RESUME = "resume"

IDLE_STATES = (RespawnState.WATCHING, RespawnState.CONFIRMING_IDLE, RespawnState.AI_CHECKING)


class RespawnController:
    """
    Watches one supervised session and runs respawn cycles when it goes idle.

    Idle detection:
    - completion message ("Worked for 2m 46s") or a stop/idle_prompt hook
      is the primary signal; a prompt indicator with no further output for
      idle_timeout_ms is the fallback
    - the candidate is debounced for the completion-confirm window, then
      confirmed by the idle checker (skipped when the checker is disabled)
    - a no-output watchdog forces a stuck-recovery cycle

    A cycle is blocked when a question prompt is pending or the team gate
    reports active teammates.
    """

    def __init__(
        self,
        session: SupervisedSession,
        config: Optional[RespawnConfig] = None,
        tracker: Optional[CycleMetricsTracker] = None,
        runner: Optional[InvocationRunner] = None,
        team_gate: Optional[TeamGate] = None,
        cli_command: str = "claude",
        temp_dir: Optional[str] = None,
    ):
        self.session = session
        self.config = config or RespawnConfig()
        self.tracker = tracker or CycleMetricsTracker()
        self.team_gate = team_gate

        runner = runner or TmuxController()
        self.idle_checker = IdleChecker(session.id, runner, self.config.ai_idle_check, cli_command, temp_dir)
        self.plan_checker = PlanChecker(session.id, runner, self.config.ai_plan_check, cli_command, temp_dir)
        self.adaptive = AdaptiveTiming(self.config.adaptive_min_confirm_ms, self.config.adaptive_max_confirm_ms)

        self._state = RespawnState.STOPPED
        self._listeners: List[EventListener] = []
        self._timers: Dict[str, asyncio.TimerHandle] = {}

        self._check_task: Optional[asyncio.Task] = None
        self._plan_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None

        self._buffer = ""
        self._carry = ""
        self._token_count = 0
        self._cycle_count = 0
        self._stuck_recovery_count = 0

        self._prompt_detected = False
        self._working_detected = False
        self._completion_detected = False
        self._elicitation_detected = False

        self._last_activity_at: Optional[datetime] = None
        self._idle_detected_at: Optional[datetime] = None
        self._idle_candidate_mono: Optional[float] = None
        self._idle_reason: Optional[str] = None
        self._forced = False
        self._cycle_forced = False
        self._confirm_ms_in_use = self.config.completion_confirm_ms

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def state(self) -> RespawnState:
        return self._state

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def is_running(self) -> bool:
        return self._state != RespawnState.STOPPED

    def start(self):
        """Begin watching. No-op when disabled by config or already running."""
        if not self.config.enabled:
            logger.info(f"[{self.session_id}] Respawn disabled by config, not starting")
            return
        if self._state != RespawnState.STOPPED:
            return

        self.session.add_output_listener(self._on_output)
        self._last_activity_at = datetime.now()
        logger.info(f"[{self.session_id}] Respawn controller started")
        self._set_state(RespawnState.WATCHING)

    def stop(self):
        """
        Stop watching. Cancels timers and any in-flight check. A check or
        cycle in progress is recorded as cancelled.
        """
        if self._state == RespawnState.STOPPED:
            return

        for kind in list(self._timers):
            self._cancel_timer(kind)

        self.idle_checker.cancel()
        self.plan_checker.cancel()
        for task in (self._check_task, self._plan_task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
        self._check_task = None
        self._plan_task = None
        self._cycle_task = None

        if self._state == RespawnState.AI_CHECKING:
            self._record_attempt(CycleOutcome.CANCELLED, "Stopped during AI idle check")
        if self.tracker.has_cycle_in_progress(self.session_id):
            self._finish_cycle(CycleOutcome.CANCELLED, "Stopped during cycle")

        self.session.remove_output_listener(self._on_output)
        self._clear_detection()
        self._elicitation_detected = False
        logger.info(f"[{self.session_id}] Respawn controller stopped")
        self._set_state(RespawnState.STOPPED)

    def add_listener(self, listener: EventListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_team_watcher(self, gate: Optional[TeamGate]):
        self.team_gate = gate

    # ------------------------------------------------------------------
    # Configuration and status
    # ------------------------------------------------------------------

    def get_config(self) -> RespawnConfig:
        return self.config

    def update_config(self, partial: dict) -> RespawnConfig:
        """
        Validate and merge a partial config update into the live controller.

        Raises:
            ConfigValidationError: nothing is changed when the update is invalid
        """
        new_config = self.config.merged(partial)
        self.config = new_config

        for key, checker in (("ai_idle_check", self.idle_checker), ("ai_plan_check", self.plan_checker)):
            value = partial.get(key)
            if value is None:
                continue
            checker.update_config(value if isinstance(value, dict) else value.to_dict())

        if self._state == RespawnState.AI_CHECKING and self.idle_checker.status == CheckStatus.DISABLED:
            logger.info(f"[{self.session_id}] Idle checker disabled mid-check, using heuristic idle detection")
            self._cancel_idle_check()
            self._gate_check()

        self.adaptive.set_bounds(new_config.adaptive_min_confirm_ms, new_config.adaptive_max_confirm_ms)
        if not new_config.auto_accept_prompts:
            self._cancel_timer(AUTO_ACCEPT)

        logger.info(f"[{self.session_id}] Respawn config updated: {sorted(partial)}")
        return new_config

    def get_status(self) -> dict:
        tracker = getattr(self.session, "iteration_tracker", None)
        current = self.tracker.get_current_cycle(self.session_id)
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "cycle_count": self._cycle_count,
            "stuck_recovery_count": self._stuck_recovery_count,
            "last_activity_at": self._last_activity_at.isoformat() if self._last_activity_at else None,
            "idle_detected_at": self._idle_detected_at.isoformat() if self._idle_detected_at else None,
            "prompt_detected": self._prompt_detected,
            "working_detected": self._working_detected,
            "completion_detected": self._completion_detected,
            "elicitation_detected": self._elicitation_detected,
            "token_count": self._token_count,
            "completion_confirm_ms": self._confirm_ms(),
            "adaptive_timing": self.adaptive.to_dict(),
            "ai_idle_check": self.idle_checker.get_state().to_dict(),
            "ai_plan_check": self.plan_checker.get_state().to_dict(),
            "iteration_tracker_enabled": bool(tracker.enabled) if tracker is not None else None,
            "current_cycle": current.to_dict() if current else None,
            "config": self.config.to_dict(),
        }

    def get_health(self) -> HealthScore:
        return calculate_health_score(HealthInputs(
            aggregate=self.tracker.get_aggregate(),
            checker_states=[self.idle_checker.get_state(), self.plan_checker.get_state()],
            stuck_recovery_count=self._stuck_recovery_count,
        ))

    # ------------------------------------------------------------------
    # External signals
    # ------------------------------------------------------------------

    def signal_elicitation(self):
        """A question prompt is waiting for the user; block cycles until work resumes."""
        if self._state == RespawnState.STOPPED:
            return
        logger.info(f"[{self.session_id}] Elicitation dialog signalled")
        self._elicitation_detected = True
        self._cancel_plan_check()
        self._cancel_timer(AUTO_ACCEPT)
        if self._state in (RespawnState.CONFIRMING_IDLE, RespawnState.AI_CHECKING):
            self._cancel_idle_check()
            if self._state == RespawnState.AI_CHECKING:
                self._record_attempt(CycleOutcome.CANCELLED, "Question prompt during AI idle check")
            self._set_state(RespawnState.WATCHING)

    def signal_stop_hook(self):
        """The agent's stop hook fired: definitive idle."""
        self._on_definitive_idle("stop_hook")

    def signal_idle_prompt(self):
        """The agent reported an idle prompt: definitive idle."""
        self._on_definitive_idle("idle_prompt")

    def _on_definitive_idle(self, reason: str):
        if self._state == RespawnState.WAITING_UPDATE:
            logger.info(f"[{self.session_id}] {reason} confirms update delivery")
            self._complete_delivery()
            return
        if self._state not in IDLE_STATES:
            return

        logger.info(f"[{self.session_id}] Definitive idle signal: {reason}")
        self._cancel_idle_check()
        self._cancel_plan_check()
        self._mark_idle_candidate(reason)
        self._gate_check()

    # ------------------------------------------------------------------
    # Output handling
    # ------------------------------------------------------------------

    def _on_output(self, chunk: str):
        if self._state == RespawnState.STOPPED:
            return

        text = strip_ansi(chunk)
        self._buffer = (self._buffer + text)[-TERMINAL_BUFFER_CHARS:]
        self._last_activity_at = datetime.now()

        tokens = extract_token_count(text)
        if tokens is not None:
            self._token_count = tokens

        completion = self._detect(is_completion_message, text)
        working = self._detect(has_working_pattern, text)
        prompt = self._detect(has_prompt_pattern, text)
        self._carry = (self._carry + text)[-CARRY_CHARS:]

        if working:
            self._elicitation_detected = False

        if self._state in (RespawnState.CONFIRMING_IDLE, RespawnState.AI_CHECKING):
            self._arm_timer(WATCHDOG, self.config.no_output_timeout_ms, self._on_no_output_timeout)

        if self._state == RespawnState.WATCHING:
            self._handle_watching(text, completion, working, prompt)
        elif self._state == RespawnState.CONFIRMING_IDLE:
            if working and not completion:
                logger.debug(f"[{self.session_id}] Working pattern during idle confirmation")
                self._on_working()
                self._set_state(RespawnState.WATCHING)
            elif text.strip():
                self._arm_timer(DEBOUNCE, self._confirm_ms_in_use, self._on_debounce_expired)
        elif self._state == RespawnState.AI_CHECKING:
            if working and not completion:
                logger.debug(f"[{self.session_id}] Working pattern during AI check, cancelling")
                self._cancel_idle_check()
                self._record_attempt(CycleOutcome.CANCELLED, "Work resumed during AI idle check")
                self._on_working()
                self._set_state(RespawnState.WATCHING)
        elif self._state == RespawnState.WAITING_UPDATE:
            if working:
                self._complete_delivery()

    def _detect(self, check: Callable[[str], bool], text: str) -> bool:
        """Match in the new text, or in a match spanning the previous chunk's tail."""
        if check(text):
            return True
        return bool(self._carry) and check(self._carry + text) and not check(self._carry)

    def _handle_watching(self, text: str, completion: bool, working: bool, prompt: bool):
        if completion:
            logger.debug(f"[{self.session_id}] Completion message detected")
            self._completion_detected = True
            self._enter_confirming_idle("completion_message")
            return

        if working:
            self._on_working()
            return

        if prompt:
            self._prompt_detected = True
            self._arm_timer(PROMPT_FALLBACK, self.config.idle_timeout_ms, self._on_prompt_fallback)

        if text.strip() and self.config.auto_accept_prompts:
            self._arm_timer(AUTO_ACCEPT, self.config.auto_accept_delay_ms, self._on_auto_accept_timer)

    def _on_working(self):
        self._working_detected = True
        self._clear_detection(keep_working=True)
        self._cancel_timer(PROMPT_FALLBACK)
        self._cancel_timer(AUTO_ACCEPT)
        self._cancel_plan_check()

    def _clear_detection(self, keep_working: bool = False):
        self._prompt_detected = False
        self._completion_detected = False
        if not keep_working:
            self._working_detected = False
        self._idle_candidate_mono = None
        self._idle_detected_at = None
        self._idle_reason = None
        self._forced = False

    # ------------------------------------------------------------------
    # Idle confirmation
    # ------------------------------------------------------------------

    def _mark_idle_candidate(self, reason: str):
        if self._idle_candidate_mono is None:
            self._idle_candidate_mono = time.monotonic()
            self._idle_detected_at = datetime.now()
        self._idle_reason = reason
        self._working_detected = False

    def _enter_confirming_idle(self, reason: str):
        self._cancel_timer(PROMPT_FALLBACK)
        self._cancel_timer(AUTO_ACCEPT)
        self._cancel_plan_check()
        self._mark_idle_candidate(reason)
        self._confirm_ms_in_use = self._confirm_ms()
        self._set_state(RespawnState.CONFIRMING_IDLE)
        self._arm_timer(DEBOUNCE, self._confirm_ms_in_use, self._on_debounce_expired)
        self._arm_timer(WATCHDOG, self.config.no_output_timeout_ms, self._on_no_output_timeout)

    def _confirm_ms(self) -> int:
        if self.config.adaptive_timing_enabled:
            return self.adaptive.get_confirm_ms(self.config.completion_confirm_ms)
        return self.config.completion_confirm_ms

    def _on_prompt_fallback(self):
        if self._state != RespawnState.WATCHING or not self._prompt_detected:
            return
        logger.debug(f"[{self.session_id}] Prompt visible for {self.config.idle_timeout_ms}ms with no activity")
        self._enter_confirming_idle("prompt_fallback")

    def _on_debounce_expired(self):
        if self._state != RespawnState.CONFIRMING_IDLE:
            return

        checker = self.idle_checker
        if checker.status == CheckStatus.DISABLED:
            logger.info(f"[{self.session_id}] Idle checker disabled, using heuristic idle detection")
            self._gate_check()
            return

        if checker.is_on_cooldown() or checker.in_flight:
            remaining = max(checker.get_cooldown_remaining_ms(), 10)
            logger.debug(f"[{self.session_id}] Idle checker cooling down, re-checking in {remaining}ms")
            self._arm_timer(DEBOUNCE, remaining, self._on_debounce_expired)
            return

        self._set_state(RespawnState.AI_CHECKING)
        self._check_task = asyncio.create_task(self._run_idle_check(self._buffer))

    async def _run_idle_check(self, buffer: str):
        task = asyncio.current_task()
        if self._check_task is not task or self._state != RespawnState.AI_CHECKING:
            return
        try:
            result = await self.idle_checker.check(buffer)
        except Exception as e:
            logger.error(f"[{self.session_id}] Idle check failed: {e}")
            if self._check_task is task and self._state == RespawnState.AI_CHECKING:
                self._check_task = None
                self._set_state(RespawnState.WATCHING)
            return

        if self._check_task is not task or self._state != RespawnState.AI_CHECKING:
            return
        self._check_task = None

        if result.is_cancelled:
            return
        if result.verdict == IdleChecker.positive_verdict:
            self._gate_check()
        elif result.verdict == IdleChecker.negative_verdict:
            self._set_state(RespawnState.WATCHING)
        elif self.idle_checker.status == CheckStatus.DISABLED:
            logger.info(f"[{self.session_id}] Idle checker just disabled, falling back to heuristic")
            self._gate_check()
        else:
            self._set_state(RespawnState.WATCHING)

    def _cancel_idle_check(self):
        self.idle_checker.cancel()
        if self._check_task is not None and not self._check_task.done():
            self._check_task.cancel()
        self._check_task = None

    def _on_no_output_timeout(self):
        if self._state not in (RespawnState.CONFIRMING_IDLE, RespawnState.AI_CHECKING):
            return
        logger.warning(
            f"[{self.session_id}] No output for {self.config.no_output_timeout_ms}ms, forcing stuck recovery"
        )
        self._cancel_idle_check()
        self._mark_idle_candidate("no_output_timeout")
        self._forced = True
        self._gate_check()

    # ------------------------------------------------------------------
    # Gate check and cycle
    # ------------------------------------------------------------------

    def _gate_check(self):
        self._cancel_timer(DEBOUNCE)
        self._cancel_timer(WATCHDOG)
        self._cancel_timer(PROMPT_FALLBACK)
        self._cancel_timer(AUTO_ACCEPT)

        idle_detection_ms = self._idle_detection_ms()

        if self._elicitation_detected:
            logger.info(f"[{self.session_id}] Respawn blocked: question prompt pending")
            self._emit(RespawnBlocked(self.session_id, "elicitation_dialog", "Question prompt waiting for user input"))
            self._clear_detection()
            self._set_state(RespawnState.WATCHING)
            return

        teammates = self._active_teammates()
        if teammates:
            details = f"{teammates} teammate(s) still working"
            logger.info(f"[{self.session_id}] Respawn blocked: {details}")
            self._record_attempt(CycleOutcome.BLOCKED, details)
            self._emit(RespawnBlocked(self.session_id, "active_teammates", details))
            self._clear_detection()
            self._set_state(RespawnState.WATCHING)
            return

        self._start_cycle(idle_detection_ms)

    def _active_teammates(self) -> int:
        if self.team_gate is None:
            return 0
        try:
            if not self.team_gate.has_active_teammates(self.session_id):
                return 0
            return max(1, self.team_gate.get_active_teammate_count(self.session_id))
        except Exception as e:
            logger.error(f"[{self.session_id}] Team gate query failed: {e}")
            return 0

    def _idle_detection_ms(self) -> int:
        if self._idle_candidate_mono is None:
            return 0
        return int((time.monotonic() - self._idle_candidate_mono) * 1000)

    def _record_attempt(self, outcome: CycleOutcome, details: str):
        """Record an idle detection that ended without sending anything."""
        if self.tracker.has_cycle_in_progress(self.session_id):
            return
        self.tracker.start_cycle(
            self.session_id,
            self._cycle_count + 1,
            self._idle_reason or "unknown",
            self._idle_detection_ms(),
            self._token_count,
            self._confirm_ms_in_use,
        )
        self.tracker.complete_cycle(self.session_id, outcome, self._token_count, details)

    def _start_cycle(self, idle_detection_ms: int):
        if self.tracker.has_cycle_in_progress(self.session_id):
            self.tracker.complete_cycle(self.session_id, CycleOutcome.ERROR, self._token_count, "Superseded")

        self._cycle_count += 1
        self._cycle_forced = self._forced
        reason = self._idle_reason or "unknown"
        self.tracker.start_cycle(
            self.session_id,
            self._cycle_count,
            reason,
            idle_detection_ms,
            self._token_count,
            self._confirm_ms_in_use,
        )
        logger.info(f"[{self.session_id}] Starting respawn cycle #{self._cycle_count} ({reason})")
        self._emit(RespawnCycleStarted(self.session_id, self._cycle_count, reason))
        self._set_state(RespawnState.SENDING_UPDATE)
        self._cycle_task = asyncio.create_task(self._run_cycle(self._cycle_forced))

    def _build_steps(self, forced: bool) -> List[Tuple[str, str]]:
        config = self.config
        steps = []
        if config.send_clear:
            if config.skip_clear_when_low_context and should_skip_clear(
                self._token_count, config.skip_clear_threshold_percent
            ):
                logger.info(f"[{self.session_id}] Skipping /clear, context usage is low ({self._token_count} tokens)")
                self.tracker.mark_clear_skipped(self.session_id)
            else:
                steps.append(("clear", "/clear"))
        if config.send_init:
            steps.append(("init", "/init"))
        if forced and config.kickstart_prompt:
            steps.append(("kickstart", config.kickstart_prompt))
        elif config.update_prompt.strip():
            steps.append(("update", config.update_prompt))
        return steps

    async def _run_cycle(self, forced: bool):
        steps = self._build_steps(forced)
        if not steps:
            self._finish_cycle(CycleOutcome.ERROR, "No steps to send")
            self._set_state(RespawnState.WATCHING)
            return

        try:
            for index, (step, text) in enumerate(steps):
                if index > 0:
                    await asyncio.sleep(self.config.inter_step_delay_ms / 1000)
                if self._state != RespawnState.SENDING_UPDATE:
                    return

                sent = await self.session.write_via_mux(text)
                if self._state != RespawnState.SENDING_UPDATE:
                    return
                if not sent:
                    logger.error(f"[{self.session_id}] Failed to send {step} step")
                    self._finish_cycle(CycleOutcome.ERROR, f"Failed to send {step} step")
                    self._set_state(RespawnState.WATCHING)
                    return

                self.tracker.record_step(self.session_id, step)
                logger.info(f"[{self.session_id}] Sent {step} step")
                self._emit(StepSent(self.session_id, step, text))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.session_id}] Respawn cycle failed: {e}")
            if self._state == RespawnState.SENDING_UPDATE:
                self._finish_cycle(CycleOutcome.ERROR, str(e))
                self._set_state(RespawnState.WATCHING)
            return

        self._cycle_task = None
        self._set_state(RespawnState.WAITING_UPDATE)
        self._arm_timer(RESUME, self.config.resume_timeout_ms, self._on_resume_timeout)

    def _complete_delivery(self):
        if self._state != RespawnState.WAITING_UPDATE:
            return
        self._cancel_timer(RESUME)
        outcome = CycleOutcome.STUCK_RECOVERY if self._cycle_forced else CycleOutcome.SUCCESS
        self._finish_cycle(outcome)
        self._working_detected = True
        self._set_state(RespawnState.WATCHING)

    def _on_resume_timeout(self):
        if self._state != RespawnState.WAITING_UPDATE:
            return
        message = f"No activity within {self.config.resume_timeout_ms}ms after update"
        logger.warning(f"[{self.session_id}] {message}")
        self._finish_cycle(CycleOutcome.ERROR, message)
        self._set_state(RespawnState.WATCHING)

    def _finish_cycle(self, outcome: CycleOutcome, error_message: Optional[str] = None):
        metrics = self.tracker.complete_cycle(self.session_id, outcome, self._token_count, error_message)
        self._cycle_forced = False
        self._clear_detection()
        if metrics is None:
            return

        if outcome == CycleOutcome.STUCK_RECOVERY:
            self._stuck_recovery_count += 1
        if outcome == CycleOutcome.SUCCESS:
            self.adaptive.record(metrics.idle_detection_ms, metrics.duration_ms)

        logger.info(f"[{self.session_id}] Respawn cycle #{metrics.cycle_number} completed: {outcome.value}")
        self._emit(RespawnCycleCompleted(self.session_id, metrics))

    # ------------------------------------------------------------------
    # Auto-accept
    # ------------------------------------------------------------------

    def _on_auto_accept_timer(self):
        if self._state != RespawnState.WATCHING or not self.config.auto_accept_prompts:
            return
        if self._completion_detected or self._elicitation_detected:
            return

        tail = self._buffer[-MENU_TAIL_CHARS:]
        if not looks_like_selection_menu(tail) or looks_like_elicitation(tail):
            return

        checker = self.plan_checker
        if checker.status == CheckStatus.DISABLED:
            self._plan_task = asyncio.create_task(self._send_auto_accept("selection_menu"))
        elif checker.is_on_cooldown() or checker.in_flight:
            logger.debug(f"[{self.session_id}] Plan checker busy, skipping auto-accept")
        else:
            self._plan_task = asyncio.create_task(self._run_plan_check(self._buffer))

    async def _run_plan_check(self, buffer: str):
        task = asyncio.current_task()
        try:
            result = await self.plan_checker.check(buffer)
        except Exception as e:
            logger.error(f"[{self.session_id}] Plan check failed: {e}")
            return

        if self._plan_task is not task or self._state != RespawnState.WATCHING or self._elicitation_detected:
            return
        if result.verdict == PlanChecker.positive_verdict:
            await self._send_auto_accept("plan_mode_confirmed")
        else:
            self._plan_task = None

    async def _send_auto_accept(self, reason: str):
        task = asyncio.current_task()
        sent = await self.session.write_via_mux("")
        if self._plan_task is task:
            self._plan_task = None
        if sent:
            logger.info(f"[{self.session_id}] Auto-accepted selection menu ({reason})")
            self._emit(AutoAcceptSent(self.session_id, reason))
        else:
            logger.warning(f"[{self.session_id}] Failed to send auto-accept")

    def _cancel_plan_check(self):
        self.plan_checker.cancel()
        if self._plan_task is not None and not self._plan_task.done():
            self._plan_task.cancel()
        self._plan_task = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _set_state(self, new_state: RespawnState):
        if new_state == self._state:
            return
        previous = self._state
        self._state = new_state

        if new_state != RespawnState.CONFIRMING_IDLE:
            self._cancel_timer(DEBOUNCE)
        if new_state not in (RespawnState.CONFIRMING_IDLE, RespawnState.AI_CHECKING):
            self._cancel_timer(WATCHDOG)
        if new_state != RespawnState.WAITING_UPDATE:
            self._cancel_timer(RESUME)

        logger.info(f"[{self.session_id}] Respawn state: {previous.value} -> {new_state.value}")
        self._emit(StateChanged(self.session_id, new_state, previous))

    def _emit(self, event: RespawnEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[{self.session_id}] Respawn listener failed on {event.kind}: {e}")

    def _arm_timer(self, kind: str, delay_ms: int, callback: Callable[[], None]):
        self._cancel_timer(kind)
        loop = asyncio.get_running_loop()
        self._timers[kind] = loop.call_later(delay_ms / 1000, self._fire_timer, kind, callback)

    def _fire_timer(self, kind: str, callback: Callable[[], None]):
        self._timers.pop(kind, None)
        try:
            callback()
        except Exception as e:
            logger.error(f"[{self.session_id}] Respawn {kind} timer failed: {e}")

    def _cancel_timer(self, kind: str):
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()
