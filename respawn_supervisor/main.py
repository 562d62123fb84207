"""Main entry point - wires the respawn manager, output monitor and API server."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import uvicorn
import yaml

from .metrics import CycleMetricsTracker
from .output_monitor import OutputMonitor
from .respawn_manager import RespawnManager
from .server import create_app
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


class RespawnSupervisorApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        # Server config
        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8421)

        # Paths
        self.log_dir = config.get("paths", {}).get("log_dir", "/tmp/respawn-supervisor")
        self.state_file = config.get("paths", {}).get("state_file", "/tmp/respawn-supervisor/sessions.json")

        self.tmux = TmuxController(config=config)
        self.output_monitor = OutputMonitor(tmux=self.tmux, config=config)
        self.tracker = CycleMetricsTracker(
            max_cycles=config.get("metrics", {}).get("max_cycles", 100),
        )
        self.respawn_manager = RespawnManager(
            log_dir=self.log_dir,
            state_file=self.state_file,
            config=config,
            tmux=self.tmux,
            output_monitor=self.output_monitor,
            tracker=self.tracker,
        )
        self.respawn_manager.subscribe(self._log_broadcast)

        self.app = create_app(respawn_manager=self.respawn_manager, config=config)
        self._server = None

    def _log_broadcast(self, event_name: str, payload: dict):
        if event_name in ("respawn:stateChanged", "respawn:stepSent"):
            return
        logger.info(f"{event_name}: {payload}")

    async def start(self):
        """Start all components."""
        logger.info("Starting Respawn Supervisor...")

        await self.respawn_manager.start()
        logger.info(f"Restored {len(self.respawn_manager.list_sessions())} sessions")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self._server = uvicorn.Server(config)
        logger.info(f"API server listening on {self.host}:{self.port}")
        await self._server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Shutting down...")
        if self._server:
            self._server.should_exit = True
        await self.respawn_manager.shutdown()
        logger.info("Shutdown complete")


def setup_signal_handlers(app: RespawnSupervisorApp):
    """Set up signal handlers for graceful shutdown."""

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        asyncio.create_task(app.stop())
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(config_path)

    app = RespawnSupervisorApp(config)
    setup_signal_handlers(app)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    asyncio.run(main(config_path))


if __name__ == "__main__":
    run()
