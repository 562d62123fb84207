"""
AI verdict checkers.

A verdict checker asks a fresh, independent invocation of the agent CLI to
judge the supervised session's terminal output. Each check runs as an
ephemeral invocation: a uniquely named detached tmux session whose output is
redirected to a uniquely named temp file. The file is polled for a done
marker, the first line is parsed into a verdict, and the session and file
are always removed afterwards (success, timeout, error or cancellation).

Two instantiations exist:
- IdleChecker: IDLE / WORKING, confirms that the agent has really stopped
- PlanChecker: PLAN_MODE / NOT_PLAN_MODE, confirms a plan approval menu
  before it is auto-accepted

Failure handling:
- negative verdict: cooldown for `cooldown_ms`
- spawn failure, timeout, unparseable output: error cooldown for
  `error_cooldown_ms`, and after `max_consecutive_errors` in a row the
  checker disables itself until re-enabled through update_config()
"""

import asyncio
import logging
import re
import shlex
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Protocol

from .errors import CheckInvocationError
from .models import (
    CheckerConfig,
    CheckerState,
    CheckResult,
    CheckStatus,
    DEFAULT_IDLE_CHECK_CONFIG,
    DEFAULT_PLAN_CHECK_CONFIG,
    VERDICT_CANCELLED,
    VERDICT_ERROR,
)
from .patterns import strip_ansi

logger = logging.getLogger(__name__)


class InvocationRunner(Protocol):
    """Starts and kills detached, named agent CLI processes."""

    def spawn_detached(self, session_name: str, command: str) -> None:
        """Start `command` detached under `session_name`. Raises on failure."""

    def kill_session(self, session_name: str) -> bool:
        """Kill by name. Must be a no-op if nothing is running under that name."""

    def session_exists(self, session_name: str) -> bool:
        ...


@dataclass
class CheckInvocation:
    """One in-flight check: a named process plus the temp file it writes to."""
    name: str
    temp_file: Path
    started: float
    future: Optional[asyncio.Future] = None
    poll_task: Optional[asyncio.Task] = None
    cancelled: bool = False
    released: bool = False

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class VerdictChecker:
    """Base class for the idle and plan checkers."""

    kind = "verdict"
    positive_verdict = ""
    negative_verdict = ""
    done_marker = ""
    prompt_template = ""
    default_config = DEFAULT_IDLE_CHECK_CONFIG

    def __init__(
        self,
        session_id: str,
        runner: InvocationRunner,
        config: Optional[CheckerConfig] = None,
        cli_command: str = "claude",
        temp_dir: Optional[str] = None,
    ):
        self.session_id = session_id
        self.runner = runner
        self.config = config or self.default_config
        self.cli_command = cli_command
        self.temp_dir = Path(temp_dir or tempfile.gettempdir())

        verdicts = sorted((self.positive_verdict, self.negative_verdict), key=len, reverse=True)
        self._verdict_re = re.compile(
            r'^\s*(' + '|'.join(re.escape(v) for v in verdicts) + r')\b', re.IGNORECASE
        )

        self._status = CheckStatus.READY
        self._last_verdict: Optional[str] = None
        self._last_reasoning: Optional[str] = None
        self._last_check_duration_ms: Optional[int] = None
        self._consecutive_errors = 0
        self._total_checks = 0
        self._disabled_reason: Optional[str] = None

        self._cooldown_deadline: Optional[float] = None
        self._cooldown_ends_at: Optional[datetime] = None
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None

        self._invocation: Optional[CheckInvocation] = None

        if not self.config.enabled:
            self._disable("Disabled by config")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> CheckStatus:
        if self._status in (CheckStatus.COOLDOWN, CheckStatus.ERROR) and not self.is_on_cooldown():
            return CheckStatus.READY
        return self._status

    @property
    def in_flight(self) -> bool:
        return self._invocation is not None

    def is_on_cooldown(self) -> bool:
        if self._cooldown_deadline is None:
            return False
        return time.monotonic() < self._cooldown_deadline

    def get_cooldown_remaining_ms(self) -> int:
        if self._cooldown_deadline is None:
            return 0
        return max(0, int((self._cooldown_deadline - time.monotonic()) * 1000))

    def get_state(self) -> CheckerState:
        return CheckerState(
            status=self.status,
            last_verdict=self._last_verdict,
            last_reasoning=self._last_reasoning,
            last_check_duration_ms=self._last_check_duration_ms,
            cooldown_ends_at=self._cooldown_ends_at if self.is_on_cooldown() else None,
            consecutive_errors=self._consecutive_errors,
            total_checks=self._total_checks,
            disabled_reason=self._disabled_reason,
        )

    def get_config(self) -> CheckerConfig:
        return self.config

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def check(self, terminal_buffer: str) -> CheckResult:
        """
        Ask a fresh agent invocation for a verdict on `terminal_buffer`.

        Rejected immediately (ERROR result, nothing spawned) while disabled,
        cooling down or already checking.
        """
        if self._status == CheckStatus.DISABLED:
            return CheckResult(VERDICT_ERROR, f"Disabled: {self._disabled_reason}")
        if self.is_on_cooldown():
            return CheckResult(VERDICT_ERROR, "On cooldown")
        if self._status == CheckStatus.CHECKING:
            return CheckResult(VERDICT_ERROR, "Already checking")

        self._clear_cooldown()
        self._status = CheckStatus.CHECKING
        self._total_checks += 1

        invocation = self._new_invocation()
        self._invocation = invocation
        logger.info(f"[{self.session_id}] Starting AI {self.kind} check ({invocation.name})")

        try:
            result = await self._run_invocation(invocation, terminal_buffer)
        except CheckInvocationError as e:
            result = CheckResult(VERDICT_ERROR, str(e), invocation.elapsed_ms())
        except asyncio.CancelledError:
            # The awaiting task itself was cancelled
            if not invocation.cancelled and self._status == CheckStatus.CHECKING:
                self._status = CheckStatus.READY
            raise
        finally:
            self._release(invocation)

        if invocation.cancelled:
            return CheckResult(VERDICT_CANCELLED, "Cancelled", invocation.elapsed_ms())

        self._record(result)
        return result

    def cancel(self):
        """
        Cancel the in-flight check, if any.

        The pending check() resolves as CANCELLED; the invocation's process
        and temp file are released before this returns.
        """
        invocation = self._invocation
        if invocation is None or self._status != CheckStatus.CHECKING:
            return

        logger.info(f"[{self.session_id}] Cancelling AI {self.kind} check ({invocation.name})")
        invocation.cancelled = True
        if invocation.future is not None and not invocation.future.done():
            invocation.future.set_result(
                CheckResult(VERDICT_CANCELLED, "Cancelled", invocation.elapsed_ms())
            )
        self._release(invocation)
        self._status = CheckStatus.READY

    def reset(self):
        """Cancel any check and clear verdict, error and cooldown state."""
        self.cancel()
        self._clear_cooldown()
        self._last_verdict = None
        self._last_reasoning = None
        self._last_check_duration_ms = None
        self._consecutive_errors = 0
        self._status = CheckStatus.DISABLED if self._disabled_reason else CheckStatus.READY

    def update_config(self, partial: dict):
        """
        Merge a partial config update.

        `enabled: False` disables the checker; only an explicit
        `enabled: True` recovers it from the disabled state.
        """
        self.config = self.config.merged(partial)
        if "enabled" not in partial:
            return
        if not partial["enabled"]:
            if self._status != CheckStatus.DISABLED:
                self.cancel()
                self._disable("Disabled by config")
        elif self._status == CheckStatus.DISABLED:
            self._disabled_reason = None
            self._consecutive_errors = 0
            self._status = CheckStatus.READY
            logger.info(f"[{self.session_id}] AI {self.kind} check re-enabled")

    def parse_output(self, content: str, duration_ms: int = 0) -> CheckResult:
        """
        Parse raw invocation output.

        The first token of the first line must be a verdict keyword
        (case-insensitive); everything after it is reasoning.
        """
        output = content.replace(self.done_marker, "").strip()
        if not output:
            return CheckResult(VERDICT_ERROR, f"Empty output from AI {self.kind} check", duration_ms)

        match = self._verdict_re.match(output)
        if not match:
            return CheckResult(VERDICT_ERROR, f'Could not parse verdict from: "{output[:100]}"', duration_ms)

        verdict = match.group(1).upper()
        reasoning = re.sub(r'^[\s:\-]+', '', output[match.end():]).strip()
        return CheckResult(verdict, reasoning or f"AI determined: {verdict}", duration_ms)

    def build_prompt(self, terminal_buffer: str) -> str:
        """Strip control codes, keep the most recent `max_context_chars`, fill the template."""
        stripped = strip_ansi(terminal_buffer)
        trimmed = stripped[-self.config.max_context_chars:]
        return self.prompt_template.replace("{TERMINAL_BUFFER}", trimmed)

    # ------------------------------------------------------------------
    # Invocation lifecycle
    # ------------------------------------------------------------------

    def _new_invocation(self) -> CheckInvocation:
        short_id = self.session_id[:8]
        timestamp = int(time.time() * 1000)
        name = f"respawn-{self.kind}check-{short_id}-{timestamp}"
        return CheckInvocation(
            name=name,
            temp_file=self.temp_dir / f"{name}.txt",
            started=time.monotonic(),
        )

    def _build_command(self, prompt: str, temp_file: Path) -> str:
        out = shlex.quote(str(temp_file))
        return (
            f"{self.cli_command} -p --model {shlex.quote(self.config.model)} "
            f"--output-format text {shlex.quote(prompt)} > {out} 2>&1; "
            f"echo {self.done_marker} >> {out}"
        )

    async def _run_invocation(self, invocation: CheckInvocation, terminal_buffer: str) -> CheckResult:
        prompt = self.build_prompt(terminal_buffer)

        try:
            invocation.temp_file.write_text("")
        except OSError as e:
            raise CheckInvocationError(invocation.name, f"Could not create temp file: {e}") from e

        try:
            self.runner.spawn_detached(invocation.name, self._build_command(prompt, invocation.temp_file))
        except Exception as e:
            raise CheckInvocationError(
                invocation.name, f"Failed to spawn AI {self.kind} check: {e}"
            ) from e

        loop = asyncio.get_running_loop()
        invocation.future = loop.create_future()
        invocation.poll_task = asyncio.create_task(self._poll(invocation))

        timeout_ms = self.config.check_timeout_ms
        try:
            return await asyncio.wait_for(invocation.future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise CheckInvocationError(
                invocation.name, f"AI {self.kind} check timed out after {timeout_ms}ms"
            ) from None

    async def _poll(self, invocation: CheckInvocation):
        """Poll the temp file until the done marker shows up."""
        interval = self.config.poll_interval_ms / 1000
        while invocation.future is not None and not invocation.future.done():
            await asyncio.sleep(interval)
            try:
                content = invocation.temp_file.read_text(errors="ignore")
            except OSError:
                continue
            if self.done_marker in content and not invocation.future.done():
                invocation.future.set_result(self.parse_output(content, invocation.elapsed_ms()))
                return

    def _release(self, invocation: CheckInvocation):
        """Kill the invocation's process and delete its file. Idempotent."""
        if invocation.poll_task is not None and not invocation.poll_task.done():
            invocation.poll_task.cancel()

        if not invocation.released:
            invocation.released = True
            try:
                self.runner.kill_session(invocation.name)
            except Exception as e:
                logger.warning(f"[{self.session_id}] Could not kill {invocation.name}: {e}")
            try:
                invocation.temp_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[{self.session_id}] Could not delete {invocation.temp_file}: {e}")

        if self._invocation is invocation:
            self._invocation = None

    # ------------------------------------------------------------------
    # Verdict bookkeeping
    # ------------------------------------------------------------------

    def _record(self, result: CheckResult):
        self._last_verdict = result.verdict
        self._last_reasoning = result.reasoning
        self._last_check_duration_ms = result.duration_ms

        if result.verdict == self.positive_verdict:
            self._consecutive_errors = 0
            self._status = CheckStatus.READY
            logger.info(
                f"[{self.session_id}] AI {self.kind} check verdict: {result.verdict} "
                f"({result.duration_ms}ms) - {result.reasoning}"
            )
        elif result.verdict == self.negative_verdict:
            self._consecutive_errors = 0
            self._start_cooldown(self.config.cooldown_ms, CheckStatus.COOLDOWN)
            logger.info(
                f"[{self.session_id}] AI {self.kind} check verdict: {result.verdict} "
                f"({result.duration_ms}ms) - {result.reasoning}"
            )
        else:
            self._handle_error(result.reasoning)

    def _handle_error(self, message: str):
        self._consecutive_errors += 1
        max_errors = self.config.max_consecutive_errors
        logger.warning(
            f"[{self.session_id}] AI {self.kind} check error "
            f"({self._consecutive_errors}/{max_errors}): {message}"
        )
        if self._consecutive_errors >= max_errors:
            self._disable(f"{max_errors} consecutive errors: {message}")
        else:
            self._start_cooldown(self.config.error_cooldown_ms, CheckStatus.ERROR)

    def _start_cooldown(self, duration_ms: int, status: CheckStatus):
        self._clear_cooldown()
        self._cooldown_deadline = time.monotonic() + duration_ms / 1000
        self._cooldown_ends_at = datetime.now() + timedelta(milliseconds=duration_ms)
        self._status = status
        self._cooldown_handle = asyncio.get_running_loop().call_later(duration_ms / 1000, self._end_cooldown)
        logger.debug(f"[{self.session_id}] AI {self.kind} check cooldown: {round(duration_ms / 1000)}s")

    def _end_cooldown(self):
        self._cooldown_handle = None
        self._cooldown_deadline = None
        self._cooldown_ends_at = None
        if self._status in (CheckStatus.COOLDOWN, CheckStatus.ERROR):
            self._status = CheckStatus.READY

    def _clear_cooldown(self):
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None
        self._cooldown_deadline = None
        self._cooldown_ends_at = None
        if self._status in (CheckStatus.COOLDOWN, CheckStatus.ERROR):
            self._status = CheckStatus.READY

    def _disable(self, reason: str):
        self._clear_cooldown()
        self._disabled_reason = reason
        self._status = CheckStatus.DISABLED
        logger.warning(f"[{self.session_id}] AI {self.kind} check disabled: {reason}")


IDLE_CHECK_PROMPT = """Analyze this terminal output from a running Claude Code session. Determine if the session is IDLE (finished its work and waiting for new input) or still WORKING.

IDLE means:
- The last response is complete and the input prompt is visible at the bottom
- No spinner, tool execution, or "Thinking" indicator in the most recent output
- A completion line such as "Worked for 2m 46s" followed by an empty prompt

WORKING means:
- A spinner or activity indicator is visible in the most recent output
- A tool call or command is still running
- Output stopped mid-response (network lag, long-running command)
- A question or selection menu is waiting for the user

Terminal output (most recent at bottom):
---
{TERMINAL_BUFFER}
---

Answer with EXACTLY one of these on the first line: IDLE or WORKING
Then optionally explain briefly why."""


PLAN_CHECK_PROMPT = """Analyze this terminal output from a running Claude Code session. Determine if the terminal is currently showing a PLAN MODE APPROVAL PROMPT or not.

A plan mode approval prompt is a numbered selection menu that Claude Code shows when it wants the user to approve a plan before proceeding. It typically has these characteristics:
- A numbered list of options (e.g., "1. Yes", "2. No", "3. Type your own")
- A selection indicator arrow pointing to one of the options
- Text asking for approval like "Would you like to proceed?" or "Ready to implement?"
- The prompt appears at the BOTTOM of the output (most recent content)

NOT a plan mode prompt:
- Claude actively working (spinners, "Thinking", tool execution)
- A completed response with no selection menu
- A question dialog asking for free-text input
- Network lag or mid-output pause
- Any state without a visible numbered selection menu

Terminal output (most recent at bottom):
---
{TERMINAL_BUFFER}
---

Answer with EXACTLY one of these on the first line: PLAN_MODE or NOT_PLAN_MODE
Then optionally explain briefly why."""


class IdleChecker(VerdictChecker):
    """Confirms that a session which looks done is really idle."""

    kind = "idle"
    positive_verdict = "IDLE"
    negative_verdict = "WORKING"
    done_marker = "__IDLECHECK_DONE__"
    prompt_template = IDLE_CHECK_PROMPT
    default_config = DEFAULT_IDLE_CHECK_CONFIG


class PlanChecker(VerdictChecker):
    """Confirms that a selection menu is a plan approval prompt before auto-accepting it."""

    kind = "plan"
    positive_verdict = "PLAN_MODE"
    negative_verdict = "NOT_PLAN_MODE"
    done_marker = "__PLANCHECK_DONE__"
    prompt_template = PLAN_CHECK_PROMPT
    default_config = DEFAULT_PLAN_CHECK_CONFIG
