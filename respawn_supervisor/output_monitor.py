"""Async log file tailing that turns tmux pipe-pane logs into output chunks."""

import asyncio
import codecs
import logging
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .models import Session, SessionStatus

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, str], None]
SessionDiedCallback = Callable[[Session], Awaitable[None]]


class OutputMonitor:
    """
    Tails each attached session's log file and forwards new content, in
    arrival order, to the output callback as (session_id, chunk).

    Every `liveness_check_every` polls the tmux session is checked; when it
    is gone the session is marked STOPPED and the died callback runs.
    """

    def __init__(
        self,
        tmux=None,
        poll_interval: float = 0.5,
        liveness_check_every: int = 30,
        config: Optional[dict] = None,
    ):
        self.tmux = tmux
        self.config = config or {}

        monitor_config = self.config.get("monitor", {})
        self.poll_interval = monitor_config.get("poll_interval", poll_interval)
        self.liveness_check_every = monitor_config.get("liveness_check_every", liveness_check_every)

        self._output_callback: Optional[OutputCallback] = None
        self._session_died_callback: Optional[SessionDiedCallback] = None
        self._tasks: dict[str, asyncio.Task] = {}
        self._file_positions: dict[str, int] = {}
        self._decoders: dict[str, codecs.IncrementalDecoder] = {}
        self._last_activity: dict[str, datetime] = {}

    def set_output_callback(self, callback: OutputCallback):
        """Set the callback receiving (session_id, chunk) for new output."""
        self._output_callback = callback

    def set_session_died_callback(self, callback: SessionDiedCallback):
        """Set the callback run when a session's tmux session disappears."""
        self._session_died_callback = callback

    def is_monitoring(self, session_id: str) -> bool:
        return session_id in self._tasks

    def get_last_activity(self, session_id: str) -> Optional[datetime]:
        return self._last_activity.get(session_id)

    async def start_monitoring(self, session: Session):
        """Start tailing a session's log from its current end."""
        if session.id in self._tasks:
            logger.warning(f"Already monitoring session {session.id}")
            return

        self._last_activity[session.id] = datetime.now()
        self._file_positions[session.id] = 0

        # Only output produced from now on is interesting
        log_path = Path(session.log_file)
        if log_path.exists():
            self._file_positions[session.id] = log_path.stat().st_size

        task = asyncio.create_task(self._monitor_loop(session))
        self._tasks[session.id] = task
        logger.info(f"Started monitoring session {session.id}")

    async def stop_monitoring(self, session_id: str):
        """Stop monitoring a session."""
        task = self._tasks.pop(session_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info(f"Stopped monitoring session {session_id}")

        self._file_positions.pop(session_id, None)
        self._decoders.pop(session_id, None)
        self._last_activity.pop(session_id, None)

    async def stop_all(self):
        """Stop all monitoring tasks."""
        for session_id in list(self._tasks.keys()):
            await self.stop_monitoring(session_id)

    def read_new_content(self, session: Session) -> Optional[str]:
        """Read whatever was appended to the session's log since the last read."""
        log_path = Path(session.log_file)
        if not log_path.exists():
            return None

        current_size = log_path.stat().st_size
        last_pos = self._file_positions.get(session.id, 0)
        decoder = self._decoders.get(session.id)
        if decoder is None or current_size < last_pos:
            # First read, or the log was truncated or rotated
            decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
            self._decoders[session.id] = decoder
        if current_size < last_pos:
            last_pos = 0
        if current_size == last_pos:
            return None

        with open(log_path, 'rb') as f:
            f.seek(last_pos)
            data = f.read()

        self._file_positions[session.id] = last_pos + len(data)
        # A multi-byte character cut at the end of the read stays buffered in the decoder
        return decoder.decode(data) or None

    async def _monitor_loop(self, session: Session):
        """Main monitoring loop for a session."""
        check_counter = 0

        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                check_counter += 1

                if self.tmux and check_counter % self.liveness_check_every == 0:
                    if not self.tmux.session_exists(session.tmux_session):
                        logger.info(f"Tmux session {session.tmux_session} no longer exists")
                        await self._handle_session_died(session)
                        break

                new_content = self.read_new_content(session)
                if not new_content:
                    continue

                now = datetime.now()
                self._last_activity[session.id] = now
                session.last_activity = now
                self._dispatch(session.id, new_content)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Monitor error for session {session.id}: {e}")
                await asyncio.sleep(5)  # Back off on error

    def _dispatch(self, session_id: str, chunk: str):
        if self._output_callback is None:
            return
        try:
            self._output_callback(session_id, chunk)
        except Exception as e:
            logger.error(f"Output callback failed for session {session_id}: {e}")

    async def _handle_session_died(self, session: Session):
        session.status = SessionStatus.STOPPED
        self._tasks.pop(session.id, None)
        self._file_positions.pop(session.id, None)
        self._decoders.pop(session.id, None)
        self._last_activity.pop(session.id, None)
        if self._session_died_callback:
            try:
                await self._session_died_callback(session)
            except Exception as e:
                logger.error(f"Session died callback failed for {session.id}: {e}")
