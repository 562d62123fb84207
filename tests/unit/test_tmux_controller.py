"""Unit tests for TmuxController with subprocess mocked out."""

import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from respawn_supervisor.tmux_controller import TmuxController


def _completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=["tmux"], returncode=returncode, stdout=stdout, stderr="")


class TestConfig:

    def test_timeouts_from_config(self):
        tmux = TmuxController(config={"timeouts": {"tmux": {"command_timeout_seconds": 9, "send_keys_settle_seconds": 0}}})
        assert tmux.command_timeout_seconds == 9
        assert tmux.send_keys_settle_seconds == 0
        assert tmux.send_keys_timeout_seconds == 5


class TestSessions:

    def test_session_exists_uses_has_session(self):
        tmux = TmuxController()
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            assert tmux.session_exists("claude-abc") is True
        assert mock_run.call_args.args[0] == ["tmux", "has-session", "-t", "claude-abc"]

    def test_session_exists_false_when_tmux_missing(self):
        tmux = TmuxController()
        with patch("subprocess.run", side_effect=FileNotFoundError("tmux")):
            assert tmux.session_exists("claude-abc") is False

    def test_kill_missing_session_is_noop(self):
        tmux = TmuxController()
        with patch("subprocess.run", return_value=_completed(1)) as mock_run:
            assert tmux.kill_session("respawn-idlecheck-abc-1") is True
        assert mock_run.call_count == 1  # only has-session

    def test_kill_existing_session(self):
        tmux = TmuxController()
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            assert tmux.kill_session("respawn-idlecheck-abc-1") is True
        assert mock_run.call_args.args[0] == ["tmux", "kill-session", "-t", "respawn-idlecheck-abc-1"]

    def test_list_sessions(self):
        tmux = TmuxController()
        with patch("subprocess.run", return_value=_completed(0, "claude-a\nclaude-b\n")):
            assert tmux.list_sessions() == ["claude-a", "claude-b"]

    def test_get_pane_pid(self):
        tmux = TmuxController()
        with patch("subprocess.run", return_value=_completed(0, "4242\n")):
            assert tmux.get_pane_pid("claude-a") == 4242
        with patch("subprocess.run", return_value=_completed(1)):
            assert tmux.get_pane_pid("claude-a") is None


class TestSpawnDetached:

    def test_spawn_kills_leftover_then_starts_bash(self):
        tmux = TmuxController()
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            return _completed(1 if cmd[1] == "has-session" else 0)

        with patch("subprocess.run", side_effect=fake_run):
            tmux.spawn_detached("respawn-idlecheck-abc-1", "claude -p hi > /tmp/x.txt")

        assert calls[-1] == [
            "tmux", "new-session", "-d", "-s", "respawn-idlecheck-abc-1",
            "bash", "-c", "claude -p hi > /tmp/x.txt",
        ]

    def test_spawn_failure_raises(self):
        tmux = TmuxController()

        def fake_run(cmd, **kwargs):
            if cmd[1] == "new-session":
                raise subprocess.CalledProcessError(1, cmd, stderr="duplicate session")
            return _completed(1)

        with patch("subprocess.run", side_effect=fake_run):
            with pytest.raises(RuntimeError, match="duplicate session"):
                tmux.spawn_detached("respawn-plancheck-abc-1", "true")


class TestPipePane:

    def test_pipe_pane_creates_log_and_pipes(self, tmp_path):
        tmux = TmuxController()
        log_file = tmp_path / "logs" / "abc.log"
        with patch("subprocess.run", return_value=_completed(0)) as mock_run:
            assert tmux.pipe_pane("claude-abc", str(log_file)) is True

        assert log_file.exists()
        assert mock_run.call_args.args[0] == ["tmux", "pipe-pane", "-o", "-t", "claude-abc", f"cat >> {log_file}"]

    def test_pipe_pane_missing_session(self, tmp_path):
        tmux = TmuxController()
        with patch("subprocess.run", return_value=_completed(1)):
            assert tmux.pipe_pane("claude-gone", str(tmp_path / "x.log")) is False


class TestSendInputAsync:

    @pytest.mark.asyncio
    async def test_text_then_separate_enter(self):
        tmux = TmuxController(config={"timeouts": {"tmux": {"send_keys_settle_seconds": 0}}})
        mock_proc = MagicMock()
        mock_proc.returncode = 0
        mock_proc.communicate = AsyncMock(return_value=(b"", b""))

        with patch.object(tmux, "session_exists", return_value=True), \
                patch("asyncio.create_subprocess_exec", return_value=mock_proc) as mock_exec:
            assert await tmux.send_input_async("claude-abc", "/clear") is True

        sent = [call.args for call in mock_exec.call_args_list]
        assert sent == [
            ("tmux", "send-keys", "-t", "claude-abc", "-l", "--", "/clear"),
            ("tmux", "send-keys", "-t", "claude-abc", "Enter"),
        ]

    @pytest.mark.asyncio
    async def test_empty_text_only_presses_enter(self):
        tmux = TmuxController()
        mock_proc = MagicMock()
        mock_proc.returncode = 0
        mock_proc.communicate = AsyncMock(return_value=(b"", b""))

        with patch.object(tmux, "session_exists", return_value=True), \
                patch("asyncio.create_subprocess_exec", return_value=mock_proc) as mock_exec:
            assert await tmux.send_input_async("claude-abc", "") is True

        assert mock_exec.call_count == 1
        assert mock_exec.call_args.args[-1] == "Enter"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failure(self):
        tmux = TmuxController()
        mock_proc = MagicMock()
        mock_proc.returncode = 1
        mock_proc.communicate = AsyncMock(return_value=(b"", b"no server running"))

        with patch.object(tmux, "session_exists", return_value=True), \
                patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            assert await tmux.send_input_async("claude-abc", "") is False

    @pytest.mark.asyncio
    async def test_missing_tmux_binary_is_failure(self):
        tmux = TmuxController()
        with patch.object(tmux, "session_exists", return_value=True), \
                patch("asyncio.create_subprocess_exec", side_effect=OSError("tmux not found")):
            assert await tmux.send_input_async("claude-abc", "hello") is False

    @pytest.mark.asyncio
    async def test_missing_session_is_failure(self):
        tmux = TmuxController()
        with patch.object(tmux, "session_exists", return_value=False):
            assert await tmux.send_input_async("claude-gone", "hello") is False
