"""
HTTP surface of the gateway.

Routes:
    POST /mcp       JSON-RPC 2.0: initialize, ping, tools/list, tools/call
    GET  /health    liveness check
    GET  /ready     readiness check (registry sealed, signing keys reachable)
    GET  /metrics   Prometheus text exposition

The bearer token travels out of band in the Authorization header. Health and
metrics endpoints are unauthenticated: the kubelet and Prometheus scraper
have no token, and in the cluster they are only reachable through the
ClusterIP Service.

Running the server:
    python -m mcp_gateway.server
"""

import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator
from typing import Any

import uvicorn
from mcp import types
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from mcp_gateway import jsonrpc
from mcp_gateway.auth import AuthError, TokenVerifier, extract_bearer_token
from mcp_gateway.config import ConfigError, Settings, settings
from mcp_gateway.dispatcher import Dispatcher
from mcp_gateway.logs import configure_logging
from mcp_gateway.metrics import PrometheusSink
from mcp_gateway.policy import AuthorizationEvaluator, PolicyStore
from mcp_gateway.registry import ToolRegistry
from mcp_gateway.tools import load_kube_backends, register_builtin_tools

logger = logging.getLogger("mcp_gateway.server")

SERVER_NAME = "mcp-tool-gateway"
SERVER_VERSION = "0.1.0"
SERVER_INSTRUCTIONS = (
    "Kubernetes diagnostic and remediation tools. Every call is authenticated "
    "with the caller's bearer token and authorized against the gateway policy."
)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    # The body has already been read, so the next ASGI message on this
    # channel is the disconnect.
    while not cancel_event.is_set():
        message = await request.receive()
        if message["type"] == "http.disconnect":
            cancel_event.set()


def create_app(
    dispatcher: Dispatcher,
    sink: PrometheusSink,
    policy_store: PolicyStore | None = None,
) -> Starlette:
    """
    Build the ASGI application around an assembled dispatcher.

    policy_store, when given, is reloaded on SIGHUP for the lifetime of the
    app (mount the policy ConfigMap and send HUP after it changes).
    """

    async def mcp_endpoint(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(jsonrpc.error_response(None, types.PARSE_ERROR, "Parse error"))

        try:
            message = jsonrpc.parse_message(body)
        except jsonrpc.JsonRpcError as e:
            return JSONResponse(e.to_response())

        # Notifications (e.g. notifications/initialized) get no response body.
        if message.is_notification:
            return Response(status_code=202)

        token = extract_bearer_token(request.headers.get("authorization"))

        if message.method == "initialize":
            return JSONResponse(
                jsonrpc.success_response(
                    message.id,
                    jsonrpc.initialize_result(SERVER_NAME, SERVER_VERSION, SERVER_INSTRUCTIONS),
                )
            )

        if message.method == "ping":
            return JSONResponse(jsonrpc.success_response(message.id, {}))

        if message.method == "tools/list":
            try:
                tools = await dispatcher.list_tools(token)
            except AuthError as e:
                return JSONResponse(jsonrpc.unauthorized_response(message.id, e.message))
            return JSONResponse(jsonrpc.success_response(message.id, jsonrpc.tool_listing(tools)))

        if message.method == "tools/call":
            call = jsonrpc.to_tool_call(message, token)
            cancel_event = asyncio.Event()
            watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
            try:
                result = await dispatcher.handle(call, cancel_event=cancel_event)
            finally:
                watcher.cancel()
            return JSONResponse(jsonrpc.tool_result_response(message.id, result))

        return JSONResponse(
            jsonrpc.error_response(
                message.id, types.METHOD_NOT_FOUND, f"Method not found: {message.method}"
            )
        )

    async def health_check(request: Request) -> Response:
        """Liveness check: is the process alive and responsive?"""
        return JSONResponse({"status": "healthy"})

    async def readiness_check(request: Request) -> Response:
        """Readiness check: can this pod verify tokens and dispatch tools?"""
        if not dispatcher.registry.sealed:
            return JSONResponse(
                {"status": "not_ready", "reason": "tool registry not sealed"}, status_code=503
            )
        if not await dispatcher.verifier.warm_up():
            return JSONResponse(
                {"status": "not_ready", "reason": "signing keys unavailable"}, status_code=503
            )
        return JSONResponse({"status": "ready", "tools": len(dispatcher.registry)})

    async def metrics_endpoint(request: Request) -> Response:
        body, content_type = sink.render()
        return Response(content=body, media_type=content_type)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        if policy_store is not None and hasattr(signal, "SIGHUP"):
            loop.add_signal_handler(signal.SIGHUP, _reload_policy, policy_store)
        try:
            yield
        finally:
            if policy_store is not None and hasattr(signal, "SIGHUP"):
                loop.remove_signal_handler(signal.SIGHUP)
            await dispatcher.verifier.key_cache.aclose()

    return Starlette(
        routes=[
            Route("/mcp", mcp_endpoint, methods=["POST"]),
            Route("/health", health_check, methods=["GET"]),
            Route("/ready", readiness_check, methods=["GET"]),
            Route("/metrics", metrics_endpoint, methods=["GET"]),
        ],
        lifespan=lifespan,
    )


def _reload_policy(store: PolicyStore) -> None:
    try:
        store.reload()
    except ConfigError as e:
        logger.error("Policy reload rejected, keeping previous policy: %s", e.message)


def build_gateway(
    config: Settings,
    *,
    registry: ToolRegistry | None = None,
    backends: dict[str, Any] | None = None,
) -> tuple[Dispatcher, PrometheusSink, PolicyStore]:
    """
    Assemble the gateway from configuration.

    Raises ConfigError for an invalid policy file or tool registration, which
    aborts startup.
    """
    if registry is None:
        registry = ToolRegistry()
        register_builtin_tools(registry)
    registry.seal()

    if backends is None:
        backends = load_kube_backends(config) if config.kube_enabled else {}

    policy_store = PolicyStore.from_file(config.policy_file)
    sink = PrometheusSink()
    dispatcher = Dispatcher(
        verifier=TokenVerifier.from_settings(config),
        registry=registry,
        evaluator=AuthorizationEvaluator(policy_store),
        sink=sink,
        backends=backends,
        handler_timeout_seconds=config.handler_timeout_seconds,
        max_concurrency=config.max_concurrency,
    )
    logger.info(
        "Gateway assembled",
        extra={
            "event_data": {
                "tools": registry.names(),
                "rules": len(policy_store.current.rules),
                "issuer": config.jwt_issuer,
                "static_key": bool(config.jwt_secret_key),
            }
        },
    )
    return dispatcher, sink, policy_store


def main() -> None:
    configure_logging(settings.log_level)
    dispatcher, sink, policy_store = build_gateway(settings)
    app = create_app(dispatcher, sink, policy_store)
    logger.info("Starting MCP tool gateway on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
