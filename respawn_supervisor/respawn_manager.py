"""Session registry and respawn controller lifecycle management."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Callable, Optional

from .errors import SessionNotFoundError
from .health import HealthInputs, calculate_health_score
from .metrics import CycleMetricsTracker
from .models import RespawnConfig, RespawnEvent, Session, SessionStatus
from .output_monitor import OutputMonitor
from .respawn_controller import RespawnController
from .session import TeamGate, TmuxSession
from .tmux_controller import TmuxController
from .verdict_checker import InvocationRunner

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict], None]

# Controller event kind -> broadcast event name
BROADCAST_NAMES = {
    "stateChanged": "respawn:stateChanged",
    "respawnCycleStarted": "respawn:cycleStarted",
    "stepSent": "respawn:stepSent",
    "respawnBlocked": "respawn:blocked",
    "respawnCycleCompleted": "respawn:cycleCompleted",
    "autoAcceptSent": "respawn:autoAcceptSent",
}

HOOK_EVENTS = ("elicitation_dialog", "stop", "idle_prompt")


class RespawnManager:
    """
    Owns one respawn controller per attached session.

    All controllers share a single CycleMetricsTracker. Each session's
    respawn config is persisted with it; partial updates merge into the
    persisted config. Sessions persisted with respawn enabled get their
    controllers restarted by start().
    """

    def __init__(
        self,
        log_dir: str = "/tmp/respawn-supervisor",
        state_file: str = "/tmp/respawn-supervisor/sessions.json",
        config: Optional[dict] = None,
        tmux: Optional[TmuxController] = None,
        output_monitor: Optional[OutputMonitor] = None,
        tracker: Optional[CycleMetricsTracker] = None,
        runner: Optional[InvocationRunner] = None,
        team_gate: Optional[TeamGate] = None,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = Path(state_file)
        self.config = config or {}

        self.tmux = tmux or TmuxController(config=self.config)
        self.output_monitor = output_monitor or OutputMonitor(tmux=self.tmux, config=self.config)
        self.output_monitor.set_output_callback(self._on_session_output)
        self.output_monitor.set_session_died_callback(self._on_session_died)

        self.tracker = tracker or CycleMetricsTracker()
        self.runner = runner or self.tmux
        self.team_gate = team_gate

        self.default_config = RespawnConfig.from_dict(self.config.get("respawn"))
        checker_config = self.config.get("checker", {})
        self.cli_command = checker_config.get("cli_command", "claude")
        self.temp_dir = checker_config.get("temp_dir")

        self.sessions: dict[str, Session] = {}
        self.runtimes: dict[str, TmuxSession] = {}
        self.controllers: dict[str, RespawnController] = {}
        self._subscribers: list[Subscriber] = []
        self._stop_timers: dict[str, asyncio.TimerHandle] = {}

        self._load_state()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> bool:
        """
        Load session state from disk.

        Sessions whose tmux session no longer exists are dropped.

        Returns:
            True if state loaded successfully (or no state file exists),
            False if an error occurred during loading.
        """
        if not self.state_file.exists():
            return True
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            for session_data in data.get("sessions", []):
                session = Session.from_dict(session_data)
                if self.tmux.session_exists(session.tmux_session):
                    self._register(session)
                    logger.info(f"Restored session: {session.name}")
                else:
                    logger.warning(f"Session {session.name} no longer exists in tmux")
            return True
        except Exception as e:
            logger.error(f"CRITICAL: Failed to load state from {self.state_file}: {e}")
            return False

    def _save_state(self) -> bool:
        """
        Save session state to disk using atomic file operations.

        Returns:
            True if state saved successfully, False if an error occurred.
        """
        state_path = Path(self.state_file)
        temp_file = state_path.with_suffix('.tmp')
        try:
            data = {"sessions": [s.to_dict() for s in self.sessions.values()]}
            state_path.parent.mkdir(parents=True, exist_ok=True)

            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)

            # Atomic rename (POSIX guarantees atomicity)
            temp_file.rename(state_path)
            return True

        except Exception as e:
            logger.error(f"CRITICAL: Failed to save state to {self.state_file}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _register(self, session: Session) -> TmuxSession:
        self.sessions[session.id] = session
        runtime = TmuxSession(session, self.tmux)
        self.runtimes[session.id] = runtime
        return runtime

    def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: no session with that id is attached
        """
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> list[Session]:
        return list(self.sessions.values())

    async def attach_session(self, tmux_session: str, working_dir: str = "", name: str = "") -> Session:
        """
        Attach an existing tmux session for supervision.

        Its pane is piped into a log file under log_dir which the output
        monitor tails.

        Raises:
            ValueError: the tmux session does not exist or is already attached
        """
        for existing in self.sessions.values():
            if existing.tmux_session == tmux_session:
                raise ValueError(f"tmux session {tmux_session} is already attached as {existing.id}")
        if not self.tmux.session_exists(tmux_session):
            raise ValueError(f"tmux session {tmux_session} does not exist")

        session = Session(name=name, working_dir=working_dir, tmux_session=tmux_session)
        session.log_file = str(self.log_dir / f"{session.id}.log")
        if not self.tmux.pipe_pane(tmux_session, session.log_file):
            raise ValueError(f"Could not pipe output of tmux session {tmux_session}")

        self._register(session)
        self._save_state()
        await self.output_monitor.start_monitoring(session)
        logger.info(f"Attached session {session.id} ({tmux_session})")
        return session

    async def detach_session(self, session_id: str):
        self.get_session(session_id)
        self._stop_controller(session_id)
        await self.output_monitor.stop_monitoring(session_id)
        self.sessions.pop(session_id, None)
        self.runtimes.pop(session_id, None)
        self._save_state()
        logger.info(f"Detached session {session_id}")

    def _on_session_output(self, session_id: str, chunk: str):
        runtime = self.runtimes.get(session_id)
        if runtime is not None:
            runtime.feed(chunk)

    async def _on_session_died(self, session: Session):
        logger.info(f"Session {session.id} died, stopping respawn")
        self._stop_controller(session.id)
        self.sessions.pop(session.id, None)
        self.runtimes.pop(session.id, None)
        self._save_state()
        self._broadcast("respawn:stopped", {"session_id": session.id, "reason": "session_died"})

    # ------------------------------------------------------------------
    # Respawn control
    # ------------------------------------------------------------------

    def _persisted_config(self, session: Session) -> RespawnConfig:
        """Manager defaults with the session's persisted config applied on top."""
        if not session.respawn_config:
            return self.default_config
        known = {
            key: value for key, value in session.respawn_config.items()
            if key in RespawnConfig.__dataclass_fields__
        }
        return self.default_config.merged(known)

    def get_respawn_status(self, session_id: str) -> dict:
        self.get_session(session_id)
        controller = self.controllers.get(session_id)
        if controller is None:
            return {"enabled": False, "status": None}
        return {"enabled": True, "status": controller.get_status()}

    def get_respawn_config(self, session_id: str) -> RespawnConfig:
        session = self.get_session(session_id)
        controller = self.controllers.get(session_id)
        if controller is not None:
            return controller.get_config()
        return self._persisted_config(session)

    def update_respawn_config(self, session_id: str, partial: dict) -> RespawnConfig:
        """
        Merge a partial update into the session's persisted config and, if a
        controller is running, into the live controller.

        Raises:
            SessionNotFoundError
            ConfigValidationError: nothing is persisted or applied
        """
        session = self.get_session(session_id)
        controller = self.controllers.get(session_id)

        new_config = self._persisted_config(session).merged(partial)
        if controller is not None:
            controller.update_config(partial)
            new_config = controller.get_config()

        session.respawn_config = new_config.to_dict()
        self._save_state()

        if controller is not None and "duration_minutes" in partial:
            self._schedule_timed_stop(session_id, new_config.duration_minutes)

        self._broadcast("respawn:configUpdated", {"session_id": session_id, "config": new_config.to_dict()})
        return new_config

    def start_respawn(self, session_id: str, partial: Optional[dict] = None) -> dict:
        """
        Start (or restart) the respawn controller for a session.

        Raises:
            SessionNotFoundError
            ConfigValidationError
        """
        session = self.get_session(session_id)
        config = self._persisted_config(session).merged(partial)

        self._stop_controller(session_id)

        controller = RespawnController(
            self.runtimes[session_id],
            config=config,
            tracker=self.tracker,
            runner=self.runner,
            team_gate=self.team_gate,
            cli_command=self.cli_command,
            temp_dir=self.temp_dir,
        )
        controller.add_listener(self._make_listener(session_id))
        controller.start()
        self.controllers[session_id] = controller

        session.respawn_enabled = True
        session.respawn_config = config.to_dict()
        self._save_state()

        self._schedule_timed_stop(session_id, config.duration_minutes)
        logger.info(f"Respawn started for session {session_id}")
        self._broadcast("respawn:started", {"session_id": session_id, "config": config.to_dict()})
        return controller.get_status()

    def stop_respawn(self, session_id: str) -> bool:
        """
        Stop the session's controller and forget it.

        Returns:
            True if a controller was running
        """
        session = self.get_session(session_id)
        was_running = self._stop_controller(session_id)

        session.respawn_enabled = False
        self._save_state()

        logger.info(f"Respawn stopped for session {session_id}")
        self._broadcast("respawn:stopped", {"session_id": session_id})
        return was_running

    def set_respawn_enabled(self, session_id: str, enabled: bool, duration_minutes: Optional[int] = None) -> dict:
        if enabled:
            partial = {"duration_minutes": duration_minutes} if duration_minutes is not None else None
            self.start_respawn(session_id, partial)
        else:
            self.stop_respawn(session_id)
        return self.get_respawn_status(session_id)

    def _stop_controller(self, session_id: str) -> bool:
        self._cancel_timed_stop(session_id)
        controller = self.controllers.pop(session_id, None)
        if controller is None:
            return False
        controller.stop()
        return True

    def _schedule_timed_stop(self, session_id: str, duration_minutes: Optional[float]):
        self._cancel_timed_stop(session_id)
        if not duration_minutes:
            return
        loop = asyncio.get_running_loop()
        self._stop_timers[session_id] = loop.call_later(
            duration_minutes * 60, self._on_duration_elapsed, session_id
        )
        logger.info(f"Respawn for session {session_id} will stop in {duration_minutes} minutes")

    def _cancel_timed_stop(self, session_id: str):
        handle = self._stop_timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _on_duration_elapsed(self, session_id: str):
        self._stop_timers.pop(session_id, None)
        if session_id not in self.controllers:
            return
        logger.info(f"Respawn duration elapsed for session {session_id}")
        try:
            self.stop_respawn(session_id)
        except SessionNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Hook events
    # ------------------------------------------------------------------

    def handle_hook_event(self, event: str, session_id: str) -> bool:
        """
        Route an agent hook event to the session's controller.

        Returns:
            True if a running controller received the signal

        Raises:
            ValueError: unknown event
            SessionNotFoundError
        """
        if event not in HOOK_EVENTS:
            raise ValueError(f"Unknown hook event: {event}")
        self.get_session(session_id)
        controller = self.controllers.get(session_id)
        if controller is None:
            logger.debug(f"Hook {event} for session {session_id} ignored, respawn not running")
            return False

        if event == "elicitation_dialog":
            controller.signal_elicitation()
        elif event == "stop":
            controller.signal_stop_hook()
        else:
            controller.signal_idle_prompt()
        return True

    # ------------------------------------------------------------------
    # Metrics, health, broadcast
    # ------------------------------------------------------------------

    def get_metrics(self, limit: int = 20) -> dict:
        return {
            "aggregate": self.tracker.get_aggregate().to_dict(),
            "recent": [m.to_dict() for m in self.tracker.get_recent(limit)],
        }

    def get_health(self, session_id: str) -> dict:
        self.get_session(session_id)
        controller = self.controllers.get(session_id)
        if controller is not None:
            return controller.get_health().to_dict()
        return calculate_health_score(HealthInputs(
            aggregate=self.tracker.get_aggregate(),
            checker_states=[],
            stuck_recovery_count=0,
        )).to_dict()

    def set_team_watcher(self, gate: Optional[TeamGate]):
        self.team_gate = gate
        for controller in self.controllers.values():
            controller.set_team_watcher(gate)

    def subscribe(self, subscriber: Subscriber):
        """Register a callback receiving (event_name, payload) broadcasts."""
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def _make_listener(self, session_id: str) -> Callable[[RespawnEvent], None]:
        def listener(event: RespawnEvent):
            name = BROADCAST_NAMES.get(event.kind)
            if name:
                self._broadcast(name, event.to_dict())
        return listener

    def _broadcast(self, event_name: str, payload: dict):
        for subscriber in list(self._subscribers):
            try:
                subscriber(event_name, payload)
            except Exception as e:
                logger.error(f"Broadcast subscriber error on {event_name}: {e}")

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def start(self):
        """Resume monitoring of restored sessions and restart enabled controllers."""
        for session in list(self.sessions.values()):
            if session.status == SessionStatus.STOPPED:
                continue
            if session.log_file:
                self.tmux.pipe_pane(session.tmux_session, session.log_file)
            await self.output_monitor.start_monitoring(session)
            if session.respawn_enabled:
                try:
                    self.start_respawn(session.id)
                    logger.info(f"Restored respawn for session {session.name}")
                except ValueError as e:
                    logger.error(f"Could not restore respawn for session {session.id}: {e}")

    async def shutdown(self):
        """Stop every controller without forgetting which sessions had respawn enabled."""
        for session_id in list(self.controllers):
            self._stop_controller(session_id)
        await self.output_monitor.stop_all()
        self._save_state()
