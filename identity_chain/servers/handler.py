import asyncio
import contextlib
from typing import Dict, Optional, Tuple

import httpx
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from opentelemetry.metrics import Meter
from opentelemetry.trace import SpanKind, Tracer
from starlette.concurrency import run_in_threadpool

from identity_chain import tracing_headers
from identity_chain.config_loader import Settings
from identity_chain.identity_providers import IdentityProvider, get_identity_provider
from identity_chain.log import get_logger
from identity_chain.telemetry import TelemetryPipeline

IDENTITY_HEADER = "Identity"
WRITE_TIMEOUT_SECONDS = 10.0
# nginx convention for "client closed request"; never seen by the client
CLIENT_CLOSED_REQUEST = 499
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class RequestHandler:
    """
    Builds the identity chain for one request.

    The local identity is always reported. With an upstream configured, the
    upstream is called with the inbound tracing headers and its body is
    appended after " -> ".
    """

    def __init__(self,
                 settings: Settings,
                 identity_provider: IdentityProvider,
                 client: httpx.AsyncClient,
                 tracer: Tracer,
                 meter: Meter):
        self.settings = settings
        self.identity_provider = identity_provider
        self.client = client
        self.tracer = tracer
        self.requests_counter = meter.create_counter(
            "identity_chain.requests",
            description="Requests served, by upstream outcome",
        )

    async def handle(self, request: Request) -> Response:
        identity = await run_in_threadpool(self.identity_provider.resolve)
        response_text = identity.describe()
        inbound_headers = tracing_headers.extract(request.headers)

        outcome = "local"
        if self.settings.upstream:
            try:
                body, error_text = await self._call_upstream_until_disconnect(request, inbound_headers)
            except ClientDisconnected:
                get_logger().info("Client disconnected, upstream call cancelled")
                self.requests_counter.add(1, {"outcome": "cancelled"})
                return Response(status_code=CLIENT_CLOSED_REQUEST)
            if error_text is not None:
                self.requests_counter.add(1, {"outcome": "upstream_error"})
                return PlainTextResponse(error_text)
            response_text += f" -> {body}"
            outcome = "upstream"

        response = PlainTextResponse(response_text)
        response.headers[IDENTITY_HEADER] = self.settings.app
        tracing_headers.inject(response.headers, inbound_headers)
        self.requests_counter.add(1, {"outcome": outcome})
        return response

    async def _call_upstream_until_disconnect(self, request: Request, inbound_headers: Dict[str, str]):
        """Run the upstream call, cancelling it if the inbound client goes away first."""
        upstream_task = asyncio.create_task(self._call_upstream(inbound_headers))
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        try:
            await asyncio.wait({upstream_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            disconnect_task.cancel()
            if not upstream_task.done():
                upstream_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await upstream_task
        if upstream_task.cancelled():
            raise ClientDisconnected()
        return upstream_task.result()

    async def _call_upstream(self, inbound_headers: Dict[str, str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (body, None) on success or (None, error text) on failure."""
        url = self.settings.upstream
        outbound_headers = {}
        tracing_headers.inject(outbound_headers, inbound_headers)

        with self.tracer.start_as_current_span("upstream", kind=SpanKind.CLIENT) as span:
            span.set_attribute("http.url", url)
            try:
                upstream_request = self.client.build_request("GET", url, headers=outbound_headers)
                upstream_response = await self.client.send(upstream_request, stream=True)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                get_logger().warning(f"Error contacting upstream service {url}: {e}")
                span.record_exception(e)
                return None, f"Error contacting upstream service: {e}"

            try:
                await upstream_response.aread()
            except httpx.HTTPError as e:
                get_logger().warning(f"Error reading upstream response from {url}: {e}")
                span.record_exception(e)
                return None, f"Error reading upstream response: {e}"
            finally:
                await upstream_response.aclose()

            span.set_attribute("http.status_code", upstream_response.status_code)
            return upstream_response.text, None


class ClientDisconnected(Exception):
    """The inbound client closed its connection before the response was ready."""


async def _wait_for_disconnect(request: Request) -> None:
    # request body chunks are skipped; the handler never reads the body
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class WriteTimeoutMiddleware:
    """
    Bounds how long a request may take to produce its response.

    When the bound is hit the request task is cancelled (and with it any
    upstream call in flight) and a 504 is sent if nothing was written yet.
    """

    def __init__(self, app, timeout: float = WRITE_TIMEOUT_SECONDS):
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_wrapper), self.timeout)
        except asyncio.TimeoutError:
            get_logger().warning(f"Request to {scope.get('path')} exceeded {self.timeout}s write timeout")
            if not response_started:
                response = PlainTextResponse("Request timed out", status_code=504)
                await response(scope, receive, send)


def create_app(settings: Settings,
               pipeline: TelemetryPipeline,
               client: Optional[httpx.AsyncClient] = None,
               identity_provider: Optional[IdentityProvider] = None,
               write_timeout: float = WRITE_TIMEOUT_SECONDS) -> FastAPI:
    """Wire the request handler into a FastAPI app with a single catch-all route."""
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(write_timeout))
    pipeline.instrument_client(client)

    handler = RequestHandler(
        settings=settings,
        identity_provider=identity_provider or get_identity_provider(settings),
        client=client,
        tracer=pipeline.get_tracer(),
        meter=pipeline.get_meter(),
    )

    router = APIRouter()
    router.add_api_route("/{path:path}", handler.handle, methods=ALL_METHODS, response_class=PlainTextResponse)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        if owns_client:
            await client.aclose()

    app = FastAPI(lifespan=lifespan)
    app.include_router(router)
    app.add_middleware(WriteTimeoutMiddleware, timeout=write_timeout)
    pipeline.instrument_app(app)

    app.state.handler = handler
    return app
