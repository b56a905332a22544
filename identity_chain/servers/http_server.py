import asyncio
import contextlib
import signal
import socket
import sys
from enum import Enum
from typing import List, Optional

import uvicorn

from identity_chain.config_loader import Settings
from identity_chain.errors import ServerStartupError, TelemetrySetupError, join_errors
from identity_chain.log import LoggingFormat, get_logger, setup_logger
from identity_chain.servers.handler import create_app
from identity_chain.telemetry import TelemetryPipeline, get_otel_config


class LifecycleState(str, Enum):
    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    FAILED = "failed"
    STOPPED = "stopped"


class IdentityServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to ServerLifecycle."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ServerLifecycle:
    """
    Runs the HTTP server until it fails or an interrupt arrives.

    The serve task and the shutdown request are raced. A server error wins
    straight away and no drain is attempted. An interrupt first removes the
    SIGINT handler, so a second Ctrl+C kills the process, then asks the
    server to stop accepting and waits for in-flight requests. Telemetry is
    shut down exactly once on either path and its error is joined with the
    server's.
    """

    def __init__(self, server: uvicorn.Server, pipeline: TelemetryPipeline, handle_signals: bool = True):
        self.server = server
        self.pipeline = pipeline
        self.handle_signals = handle_signals
        self.state = LifecycleState.STARTING
        self._shutdown_requested = asyncio.Event()
        self._handles_interrupt = False

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    async def run(self, sockets: Optional[List[socket.socket]] = None) -> Optional[BaseException]:
        loop = asyncio.get_running_loop()
        if self.handle_signals:
            self._install_interrupt_handler(loop)

        serve_task = asyncio.create_task(self._serve(sockets))
        shutdown_task = asyncio.create_task(self._shutdown_requested.wait())
        self.state = LifecycleState.LISTENING

        done, _ = await asyncio.wait({serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        self._remove_interrupt_handler(loop)

        if serve_task in done:
            shutdown_task.cancel()
            error = serve_task.exception()
            if error is not None:
                self.state = LifecycleState.FAILED
                get_logger().error(f"HTTP server failed: {error}")
        else:
            self.state = LifecycleState.DRAINING
            get_logger().info("Shutdown requested, draining in-flight requests")
            self.server.should_exit = True
            error = None
            try:
                await serve_task
            except Exception as e:
                error = e

        self.state = LifecycleState.STOPPED
        return join_errors(error, self.pipeline.shutdown())

    async def _serve(self, sockets: Optional[List[socket.socket]]) -> None:
        try:
            await self.server.serve(sockets=sockets)
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind or start up
            raise ServerStartupError(f"HTTP server exited during startup with status {e.code}") from e
        if not self.server.started:
            raise ServerStartupError("HTTP server failed to start")

    def _install_interrupt_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            loop.add_signal_handler(signal.SIGINT, self.request_shutdown)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            get_logger().warning(f"Cannot install SIGINT handler, graceful shutdown disabled: {e}")
            return
        self._handles_interrupt = True

    def _remove_interrupt_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self._handles_interrupt:
            return
        loop.remove_signal_handler(signal.SIGINT)
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        self._handles_interrupt = False


def bind_socket(port: int, host: str = "0.0.0.0") -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def _start_telemetry(settings: Settings):
    """Returns (pipeline, setup error). Setup failures leave an inert pipeline."""
    config = get_otel_config(settings)
    try:
        return TelemetryPipeline.start(config), None
    except TelemetrySetupError as e:
        get_logger().error(f"{e}; continuing without telemetry")
        return TelemetryPipeline(config), e


async def serve(settings: Settings) -> Optional[BaseException]:
    """Run the service until interrupted. Returns the joined process-level error, if any."""
    pipeline, setup_error = _start_telemetry(settings)

    try:
        sock = bind_socket(settings.port)
    except OSError as e:
        get_logger().error(f"Failed to listen on port {settings.port}: {e}")
        return join_errors(setup_error, e, pipeline.shutdown())

    app = create_app(settings, pipeline)
    server = IdentityServer(uvicorn.Config(app, host="0.0.0.0", port=settings.port))
    lifecycle = ServerLifecycle(server, pipeline)

    get_logger().info(
        f"Serving {settings.app or 'identity-chain'} on port {settings.port}, "
        f"upstream: {settings.upstream or 'none'}"
    )
    try:
        error = await lifecycle.run(sockets=[sock])
    finally:
        sock.close()
    return join_errors(setup_error, error)


def start():
    settings = Settings.from_env()
    fmt = LoggingFormat.JSON if settings.log_format == LoggingFormat.JSON.value else LoggingFormat.CONSOLE
    setup_logger(level=settings.log_level, fmt=fmt)

    error = asyncio.run(serve(settings))
    if error is not None:
        get_logger().error(f"identity-chain stopped with error: {error}")
        sys.exit(1)
    get_logger().info("identity-chain stopped")


if __name__ == '__main__':
    start()
