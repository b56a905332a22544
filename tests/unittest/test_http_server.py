import asyncio
import socket
from unittest.mock import MagicMock

import httpx
import pytest
import uvicorn
from fastapi import FastAPI

from identity_chain.config_loader import Settings
from identity_chain.errors import AggregateError, ServerStartupError
from identity_chain.identity_providers import IdentityProvider, ServiceIdentity
from identity_chain.servers import http_server
from identity_chain.servers.handler import create_app
from identity_chain.servers.http_server import (IdentityServer, LifecycleState,
                                                ServerLifecycle, bind_socket,
                                                serve)
from identity_chain.telemetry import TelemetryConfig, TelemetryPipeline


class FakeServer:
    def __init__(self, fail_with=None, drain_seconds=0.05):
        self.fail_with = fail_with
        self.drain_seconds = drain_seconds
        self.should_exit = False
        self.started = False
        self.drained = False

    async def serve(self, sockets=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.started = True
        while not self.should_exit:
            await asyncio.sleep(0.01)
        await asyncio.sleep(self.drain_seconds)
        self.drained = True


def _pipeline(shutdown_error=None):
    pipeline = MagicMock()
    pipeline.shutdown.return_value = shutdown_error
    return pipeline


@pytest.mark.asyncio
async def test_listen_error_skips_drain_and_shuts_down_telemetry():
    error = OSError("address already in use")
    server = FakeServer(fail_with=error)
    pipeline = _pipeline()
    lifecycle = ServerLifecycle(server, pipeline, handle_signals=False)

    result = await lifecycle.run()

    assert result is error
    assert server.should_exit is False
    assert lifecycle.state == LifecycleState.STOPPED
    pipeline.shutdown.assert_called_once()


@pytest.mark.asyncio
async def test_listen_error_is_joined_with_telemetry_shutdown_error():
    listen_error = OSError("address already in use")
    shutdown_error = RuntimeError("flush failed")
    lifecycle = ServerLifecycle(FakeServer(fail_with=listen_error), _pipeline(shutdown_error), handle_signals=False)

    result = await lifecycle.run()

    assert isinstance(result, AggregateError)
    assert result.errors == (listen_error, shutdown_error)


@pytest.mark.asyncio
async def test_uvicorn_exit_during_startup_becomes_startup_error():
    lifecycle = ServerLifecycle(FakeServer(fail_with=SystemExit(1)), _pipeline(), handle_signals=False)

    result = await lifecycle.run()

    assert isinstance(result, ServerStartupError)


@pytest.mark.asyncio
async def test_shutdown_request_drains_before_telemetry_shutdown():
    server = FakeServer(drain_seconds=0.1)
    pipeline = _pipeline()

    def check_drained():
        assert server.drained
        return None

    pipeline.shutdown.side_effect = check_drained
    lifecycle = ServerLifecycle(server, pipeline, handle_signals=False)

    run_task = asyncio.create_task(lifecycle.run())
    await asyncio.sleep(0.05)
    assert lifecycle.state == LifecycleState.LISTENING
    lifecycle.request_shutdown()
    result = await run_task

    assert result is None
    assert server.should_exit is True
    assert server.drained is True
    assert lifecycle.state == LifecycleState.STOPPED
    pipeline.shutdown.assert_called_once()


@pytest.mark.asyncio
async def test_shutdown_request_with_telemetry_error_reports_it():
    shutdown_error = RuntimeError("exporter timed out")
    lifecycle = ServerLifecycle(FakeServer(), _pipeline(shutdown_error), handle_signals=False)

    run_task = asyncio.create_task(lifecycle.run())
    await asyncio.sleep(0.02)
    lifecycle.request_shutdown()

    assert await run_task is shutdown_error


@pytest.mark.asyncio
async def test_in_flight_request_completes_during_graceful_shutdown():
    app = FastAPI()
    request_started = asyncio.Event()

    @app.get("/slow")
    async def slow():
        request_started.set()
        await asyncio.sleep(0.3)
        return "finished"

    sock = bind_socket(0, host="127.0.0.1")
    port = sock.getsockname()[1]
    server = IdentityServer(uvicorn.Config(app, lifespan="off", log_level="warning"))
    pipeline = _pipeline()
    lifecycle = ServerLifecycle(server, pipeline, handle_signals=False)

    try:
        run_task = asyncio.create_task(lifecycle.run(sockets=[sock]))
        while not server.started:
            await asyncio.sleep(0.01)

        async with httpx.AsyncClient() as client:
            request_task = asyncio.create_task(client.get(f"http://127.0.0.1:{port}/slow"))
            await request_started.wait()
            lifecycle.request_shutdown()
            response = await request_task

        result = await run_task
    finally:
        sock.close()

    assert response.status_code == 200
    assert response.json() == "finished"
    assert result is None
    pipeline.shutdown.assert_called_once()

    with pytest.raises(httpx.ConnectError):
        async with httpx.AsyncClient() as client:
            await client.get(f"http://127.0.0.1:{port}/slow")


def test_bind_socket_fails_when_port_is_taken():
    taken = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    taken.bind(("127.0.0.1", 0))
    taken.listen()
    try:
        with pytest.raises(OSError):
            bind_socket(taken.getsockname()[1], host="127.0.0.1")
    finally:
        taken.close()


@pytest.mark.asyncio
async def test_serve_reports_bind_failure(monkeypatch):
    def fail_to_bind(port, host="0.0.0.0"):
        raise OSError(98, "Address already in use")

    monkeypatch.setattr(http_server, "bind_socket", fail_to_bind)

    result = await serve(Settings(app="frontend", port=8080))

    assert isinstance(result, OSError)
    assert result.errno == 98


class StaticIdentityProvider(IdentityProvider):
    def resolve(self) -> ServiceIdentity:
        return ServiceIdentity(name="frontend", version="v1", ip="10.0.0.7", hostname="pod-a")


@pytest.mark.asyncio
async def test_client_disconnect_closes_the_upstream_connection():
    upstream_reached = asyncio.Event()
    upstream_closed = asyncio.Event()

    async def never_answer(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        upstream_reached.set()
        # returns once the peer closes its side
        await reader.read()
        upstream_closed.set()
        writer.close()

    upstream = await asyncio.start_server(never_answer, "127.0.0.1", 0)
    upstream_port = upstream.sockets[0].getsockname()[1]

    settings = Settings(app="frontend", version="v1", upstream=f"http://127.0.0.1:{upstream_port}/")
    sock = bind_socket(0, host="127.0.0.1")
    port = sock.getsockname()[1]

    async with httpx.AsyncClient() as upstream_client:
        app = create_app(
            settings,
            TelemetryPipeline(TelemetryConfig(otlp_endpoint=None)),
            client=upstream_client,
            identity_provider=StaticIdentityProvider(),
        )
        server = IdentityServer(uvicorn.Config(app, lifespan="off", log_level="warning"))
        lifecycle = ServerLifecycle(server, _pipeline(), handle_signals=False)
        try:
            run_task = asyncio.create_task(lifecycle.run(sockets=[sock]))
            while not server.started:
                await asyncio.sleep(0.01)

            with pytest.raises(httpx.ReadTimeout):
                async with httpx.AsyncClient(timeout=0.3) as client:
                    await client.get(f"http://127.0.0.1:{port}/")

            assert upstream_reached.is_set()
            await asyncio.wait_for(upstream_closed.wait(), timeout=1.0)

            lifecycle.request_shutdown()
            assert await run_task is None
        finally:
            sock.close()
            upstream.close()
            await upstream.wait_closed()
