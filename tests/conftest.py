"""Shared pytest fixtures for respawn supervisor tests."""

import asyncio
import re
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from respawn_supervisor.metrics import CycleMetricsTracker
from respawn_supervisor.models import CheckerConfig, RespawnConfig, SessionStatus
from respawn_supervisor.tmux_controller import TmuxController

_MARKER_RE = re.compile(r'echo (\S+) >>')


class MockSession:
    """In-memory SupervisedSession: tests push output with emit() and inspect writes."""

    def __init__(self, session_id: str = "sess1234abcd", write_result: bool = True):
        self.id = session_id
        self.working_dir = "/tmp/test-workspace"
        self.pid = 4242
        self.status = SessionStatus.RUNNING
        self.iteration_tracker = None
        self.write_result = write_result
        self.written: list[str] = []
        self.raw_writes: list[str] = []
        self._listeners = []

    def add_output_listener(self, listener):
        self._listeners.append(listener)

    def remove_output_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, chunk: str):
        for listener in list(self._listeners):
            listener(chunk)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def write(self, text: str):
        self.raw_writes.append(text)

    async def write_via_mux(self, text: str) -> bool:
        self.written.append(text)
        if isinstance(self.write_result, Exception):
            raise self.write_result
        return self.write_result


class FakeInvocationRunner:
    """
    InvocationRunner that never touches tmux.

    On spawn it optionally writes `response` plus the command's done marker
    into the invocation's temp file after `delay` seconds.
    """

    def __init__(self, temp_dir: Path, response: Optional[str] = None, delay: float = 0.02, fail: bool = False):
        self.temp_dir = Path(temp_dir)
        self.response = response
        self.delay = delay
        self.fail = fail
        self.spawned: list[str] = []
        self.commands: list[str] = []
        self.killed: list[str] = []
        self.alive: set[str] = set()

    def spawn_detached(self, session_name: str, command: str) -> None:
        if self.fail:
            raise RuntimeError("tmux new-session failed")
        self.spawned.append(session_name)
        self.commands.append(command)
        self.alive.add(session_name)
        if self.response is not None:
            marker = _MARKER_RE.search(command).group(1)
            temp_file = self.temp_dir / f"{session_name}.txt"
            content = f"{self.response}\n{marker}\n"
            asyncio.get_running_loop().call_later(self.delay, self._write, temp_file, content)

    def _write(self, temp_file: Path, content: str):
        if temp_file.exists():
            temp_file.write_text(content)

    def kill_session(self, session_name: str) -> bool:
        self.killed.append(session_name)
        self.alive.discard(session_name)
        return True

    def session_exists(self, session_name: str) -> bool:
        return session_name in self.alive


class MockTeamGate:
    def __init__(self, count: int = 0):
        self.count = count

    def has_active_teammates(self, session_id: str) -> bool:
        return self.count > 0

    def get_active_teammate_count(self, session_id: str) -> int:
        return self.count


def fast_checker_config(**overrides) -> CheckerConfig:
    values = dict(
        check_timeout_ms=1000,
        cooldown_ms=200,
        error_cooldown_ms=0,
        max_consecutive_errors=3,
        poll_interval_ms=10,
    )
    values.update(overrides)
    return CheckerConfig(**values)


def fast_config(**overrides) -> RespawnConfig:
    """RespawnConfig with timings short enough for real-timer tests."""
    values = dict(
        idle_timeout_ms=100,
        completion_confirm_ms=50,
        no_output_timeout_ms=2000,
        inter_step_delay_ms=10,
        resume_timeout_ms=500,
        auto_accept_prompts=False,
        auto_accept_delay_ms=50,
        adaptive_timing_enabled=False,
        adaptive_min_confirm_ms=10,
        adaptive_max_confirm_ms=1000,
        ai_idle_check=fast_checker_config(enabled=False),
        ai_plan_check=fast_checker_config(enabled=False),
    )
    values.update(overrides)
    return RespawnConfig(**values)


@pytest.fixture
def mock_session() -> MockSession:
    return MockSession()


@pytest.fixture
def tracker() -> CycleMetricsTracker:
    return CycleMetricsTracker()


@pytest.fixture
def fake_runner(tmp_path) -> FakeInvocationRunner:
    """Runner with no scripted response; tests set .response as needed."""
    return FakeInvocationRunner(tmp_path)


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock with common tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.session_exists.return_value = True
    mock.spawn_detached.return_value = None
    mock.kill_session.return_value = True
    mock.pipe_pane.return_value = True
    mock.send_input.return_value = True
    mock.send_input_async = AsyncMock(return_value=True)
    mock.get_pane_pid.return_value = 4242
    mock.list_sessions.return_value = []
    return mock


@pytest.fixture
def mock_output_monitor() -> MagicMock:
    mock = MagicMock()
    mock.start_monitoring = AsyncMock()
    mock.stop_monitoring = AsyncMock()
    mock.stop_all = AsyncMock()
    return mock


@pytest.fixture
def make_config():
    """Factory for fast-timer RespawnConfig objects."""
    return fast_config


@pytest.fixture
def make_checker_config():
    """Factory for fast-timer CheckerConfig objects."""
    return fast_checker_config


@pytest.fixture
def make_runner(tmp_path):
    """Factory for FakeInvocationRunner writing into tmp_path."""
    def _make(**kwargs) -> FakeInvocationRunner:
        return FakeInvocationRunner(tmp_path, **kwargs)
    return _make


@pytest.fixture
def make_team_gate():
    return MockTeamGate


@pytest.fixture
def make_controller(mock_session, tracker, fake_runner, tmp_path):
    """
    Factory for RespawnControllers wired to the mock session, shared tracker
    and fake runner. Controllers are stopped at teardown.
    """
    from respawn_supervisor.respawn_controller import RespawnController

    created = []

    def _make(config: Optional[RespawnConfig] = None, session=None, runner=None, team_gate=None):
        controller = RespawnController(
            session or mock_session,
            config=config or fast_config(),
            tracker=tracker,
            runner=runner or fake_runner,
            team_gate=team_gate,
            temp_dir=str(tmp_path),
        )
        created.append(controller)
        return controller

    yield _make

    for controller in created:
        try:
            controller.stop()
        except RuntimeError:
            pass  # event loop already closed
