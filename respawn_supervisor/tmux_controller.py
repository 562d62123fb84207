"""tmux operations for supervised sessions and ephemeral checker invocations."""

import asyncio
import subprocess
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TmuxController:
    """
    Controls tmux sessions.

    Used two ways: to drive a supervised agent session (pipe its pane into a
    log file, type input into it) and as the invocation runner for verdict
    checkers (spawn a detached, named session running a one-shot command and
    kill it by name).
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 3)
        self.send_keys_timeout_seconds = tmux_timeouts.get("send_keys_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.3)

    def _run_tmux(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        cmd = ["tmux"] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd[:4])}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=self.command_timeout_seconds,
        )

    def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        try:
            result = self._run_tmux("has-session", "-t", session_name, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not query tmux for {session_name}: {e}")
            return False
        return result.returncode == 0

    def spawn_detached(self, session_name: str, command: str) -> None:
        """
        Start a detached tmux session running `command` under bash.

        Any leftover session with the same name is killed first.

        Raises:
            RuntimeError: if tmux could not start the session
        """
        self.kill_session(session_name)
        try:
            self._run_tmux(
                "new-session",
                "-d",
                "-s", session_name,
                "bash", "-c", command,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"tmux new-session failed for {session_name}: {e.stderr.strip()}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RuntimeError(f"tmux new-session failed for {session_name}: {e}") from e
        logger.info(f"Spawned detached tmux session {session_name}")

    def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session. Killing a session that does not exist is a no-op.

        Returns:
            True if the session is gone afterwards
        """
        if not self.session_exists(session_name):
            return True

        try:
            self._run_tmux("kill-session", "-t", session_name)
            logger.info(f"Killed session {session_name}")
            return True

        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to kill session: {e.stderr}")
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to kill session {session_name}: {e}")
            return False

    def list_sessions(self) -> list[str]:
        """List all tmux sessions."""
        result = self._run_tmux("list-sessions", "-F", "#{session_name}", check=False)
        if result.returncode != 0:
            return []
        return [s.strip() for s in result.stdout.strip().split("\n") if s.strip()]

    def get_pane_pid(self, session_name: str) -> Optional[int]:
        """PID of the process running in the session's active pane."""
        result = self._run_tmux("display-message", "-p", "-t", session_name, "#{pane_pid}", check=False)
        if result.returncode != 0:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    def pipe_pane(self, session_name: str, log_file: str) -> bool:
        """
        Append everything the session's pane prints to `log_file`.

        Returns:
            True if the pipe was set up
        """
        if not self.session_exists(session_name):
            logger.error(f"Session {session_name} does not exist")
            return False

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.touch()

        try:
            self._run_tmux(
                "pipe-pane",
                "-o",
                "-t", session_name,
                f"cat >> {log_file}",
            )
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to pipe pane for {session_name}: {e.stderr}")
            return False

    def send_input(self, session_name: str, text: str) -> bool:
        """Type raw text into a session without pressing Enter."""
        if not self.session_exists(session_name):
            logger.error(f"Session {session_name} does not exist")
            return False

        try:
            self._run_tmux("send-keys", "-t", session_name, "-l", "--", text)
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to send input: {e.stderr}")
            return False
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout sending input to {session_name}")
            return False

    async def send_input_async(self, session_name: str, text: str) -> bool:
        """
        Type text into a tmux session and submit it (non-blocking).

        An empty `text` just presses Enter.

        Args:
            session_name: Target session name
            text: Text to send (Enter is sent as a separate keystroke)

        Returns:
            True if input sent successfully
        """
        if not self.session_exists(session_name):
            logger.error(f"Session {session_name} does not exist")
            return False

        try:
            if text:
                proc = await asyncio.create_subprocess_exec(
                    'tmux', 'send-keys', '-t', session_name, '-l', '--', text,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(), timeout=self.send_keys_timeout_seconds
                )
                if proc.returncode != 0:
                    logger.error(f"Failed to send text: {stderr.decode()}")
                    return False

                # The agent TUI treats a rapid burst ending in \r as a paste;
                # Enter must arrive as a separate event.
                await asyncio.sleep(self.send_keys_settle_seconds)

            proc = await asyncio.create_subprocess_exec(
                'tmux', 'send-keys', '-t', session_name, 'Enter',
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.send_keys_timeout_seconds
            )
            if proc.returncode != 0:
                logger.error(f"Failed to send Enter: {stderr.decode()}")
                return False

            logger.info(f"Sent input (async) to {session_name}: {text[:50]}")
            return True

        except asyncio.TimeoutError:
            logger.error(f"Timeout sending input to {session_name}")
            return False
        except OSError as e:
            logger.error(f"Failed to send input: {e}")
            return False
