"""Interfaces the respawn controller consumes, and the tmux-backed session adapter."""

import logging
from typing import Callable, List, Optional, Protocol

from .models import Session, SessionStatus
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

OutputListener = Callable[[str], None]


class IterationTracker(Protocol):
    """Autonomous iteration tracker. Only `enabled` is read."""

    enabled: bool


class SupervisedSession(Protocol):
    """The session a respawn controller watches and types into."""

    id: str
    working_dir: str

    @property
    def pid(self) -> Optional[int]:
        ...

    @property
    def status(self) -> SessionStatus:
        ...

    @property
    def iteration_tracker(self) -> Optional[IterationTracker]:
        ...

    def add_output_listener(self, listener: OutputListener) -> None:
        ...

    def remove_output_listener(self, listener: OutputListener) -> None:
        ...

    def write(self, text: str) -> None:
        """Raw write without submitting."""

    async def write_via_mux(self, text: str) -> bool:
        """Type `text` and press Enter through the multiplexer. False on failure."""


class TeamGate(Protocol):
    """Team-coordination layer: reports teammates still working for a lead session."""

    def has_active_teammates(self, session_id: str) -> bool:
        ...

    def get_active_teammate_count(self, session_id: str) -> int:
        ...


class TmuxSession:
    """
    SupervisedSession backed by a tmux session.

    Output arrives through feed(), which the host calls with each chunk the
    OutputMonitor tails from the session's pipe-pane log. Input goes out
    with tmux send-keys.
    """

    def __init__(self, record: Session, tmux: TmuxController, iteration_tracker: Optional[IterationTracker] = None):
        self.record = record
        self.tmux = tmux
        self._iteration_tracker = iteration_tracker
        self._listeners: List[OutputListener] = []

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def working_dir(self) -> str:
        return self.record.working_dir

    @property
    def status(self) -> SessionStatus:
        return self.record.status

    @property
    def pid(self) -> Optional[int]:
        return self.tmux.get_pane_pid(self.record.tmux_session)

    @property
    def iteration_tracker(self) -> Optional[IterationTracker]:
        return self._iteration_tracker

    def add_output_listener(self, listener: OutputListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_output_listener(self, listener: OutputListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def feed(self, chunk: str):
        """Deliver an output chunk to every listener, in registration order."""
        for listener in list(self._listeners):
            try:
                listener(chunk)
            except Exception as e:
                logger.error(f"[{self.id}] Output listener failed: {e}")

    def write(self, text: str):
        self.tmux.send_input(self.record.tmux_session, text)

    async def write_via_mux(self, text: str) -> bool:
        return await self.tmux.send_input_async(self.record.tmux_session, text)
