"""
Request dispatcher: the lifecycle of one tools/call.

Every request runs the same fixed sequence and stops at the first failure:

    1. shape check       -> MalformedRequest
    2. token             -> Unauthorized      ("auth_failed")
    3. registry lookup   -> UnknownTool
    4. argument schema   -> ValidationError
    5. authorization     -> Forbidden         ("authz_denied")
    6. handler           -> Timeout / Cancelled / InternalError
    7. success           -> Success           ("call_succeeded")

Whatever the exit path, the sink receives exactly one record_call() and one
log() for the request. Expected failures come back as Failure values; no
exception raised by a handler or a collaborator crosses handle(), except
the CancelledError of a caller that cancels handle() itself.
"""

import asyncio
import contextvars
import functools
import inspect
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from mcp_gateway.auth import AuthError, Claims, TokenVerifier
from mcp_gateway.metrics import UNRESOLVED_TOOL, MetricsSink, Outcome
from mcp_gateway.policy import AuthorizationEvaluator
from mcp_gateway.registry import ToolContext, ToolDescriptor, ToolRegistry
from mcp_gateway.results import ErrorKind, Failure, Success, ToolResult

logger = logging.getLogger("mcp_gateway.dispatcher")

# Returned for any handler bug; the real exception only goes to the log.
INTERNAL_ERROR_MESSAGE = "Internal error while executing tool"


@dataclass(frozen=True)
class ToolCallRequest:
    """A tools/call as decoded from the transport; fields are not yet validated."""

    id: Any
    tool_name: str
    arguments: Mapping[str, Any] | None
    token: str | None


class Dispatcher:
    """
    Orchestrates verification, authorization and handler invocation.

    Collaborators are injected so each can be replaced by a test double.
    The dispatcher keeps no per-request state on the instance; the only
    shared objects are the sealed registry, the policy snapshot and the
    concurrency semaphore.
    """

    def __init__(
        self,
        *,
        verifier: TokenVerifier,
        registry: ToolRegistry,
        evaluator: AuthorizationEvaluator,
        sink: MetricsSink,
        backends: Mapping[str, Any] | None = None,
        handler_timeout_seconds: float = 30.0,
        max_concurrency: int = 16,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._verifier = verifier
        self._registry = registry
        self._evaluator = evaluator
        self._sink = sink
        self._backends = dict(backends or {})
        self._timeout = handler_timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def verifier(self) -> TokenVerifier:
        return self._verifier

    async def handle(
        self, request: ToolCallRequest, *, cancel_event: asyncio.Event | None = None
    ) -> ToolResult:
        """
        Process one tool call and return its result.

        Args:
            request: The decoded tools/call request
            cancel_event: Set by the transport when the caller disconnects;
                          the in-flight handler is cancelled and the result
                          is Failure(Cancelled)
        """
        started = self._clock()
        request_id = str(request.id) if request.id is not None else str(uuid.uuid4())[:8]
        fields: dict[str, Any] = {"request_id": request_id, "tool": request.tool_name}
        # The metric label stays UNRESOLVED_TOOL until the registry lookup succeeds.
        labels = {"tool": UNRESOLVED_TOOL}

        try:
            result, event = await self._process(request, request_id, fields, labels, cancel_event)
        except asyncio.CancelledError:
            self._finish(
                labels, Failure(ErrorKind.CANCELLED, "Request cancelled"), "call_cancelled", fields, started
            )
            raise
        except Exception:
            logger.exception(
                "Unexpected error while dispatching",
                extra={"event_data": {"request_id": request_id, "tool": request.tool_name}},
            )
            result, event = Failure(ErrorKind.INTERNAL_ERROR, INTERNAL_ERROR_MESSAGE), "call_failed"

        self._finish(labels, result, event, fields, started)
        return result

    async def _process(
        self,
        request: ToolCallRequest,
        request_id: str,
        fields: dict[str, Any],
        labels: dict[str, str],
        cancel_event: asyncio.Event | None,
    ) -> tuple[ToolResult, str]:
        # Step 1: shape
        if not isinstance(request.tool_name, str) or not request.tool_name.strip():
            return Failure(ErrorKind.MALFORMED_REQUEST, "Tool name is required"), "malformed_request"
        if not isinstance(request.arguments, Mapping):
            return (
                Failure(ErrorKind.MALFORMED_REQUEST, "Tool arguments must be an object"),
                "malformed_request",
            )
        arguments = dict(request.arguments)

        # Step 2: authentication
        try:
            claims = await self._verifier.verify(request.token)
        except AuthError as e:
            fields["reason"] = e.kind.value
            return Failure(ErrorKind.UNAUTHORIZED, e.message), "auth_failed"
        fields["subject"] = claims.subject

        # Step 3: lookup
        descriptor = self._registry.lookup(request.tool_name)
        if descriptor is None:
            return (
                Failure(ErrorKind.UNKNOWN_TOOL, f"Unknown tool '{request.tool_name}'"),
                "unknown_tool",
            )
        labels["tool"] = descriptor.name

        # Step 4: schema
        errors = self._registry.validate_arguments(descriptor, arguments)
        if errors:
            fields["validation_errors"] = len(errors)
            return (
                Failure(
                    ErrorKind.VALIDATION_ERROR,
                    "Arguments do not match the tool's input schema",
                    {"errors": errors},
                ),
                "validation_failed",
            )

        # Step 5: authorization
        decision = self._evaluator.authorize(
            claims, descriptor.name, arguments, capability=descriptor.required_capability
        )
        if not decision.allowed:
            fields["reason"] = decision.reason
            return Failure(ErrorKind.FORBIDDEN, f"Access denied: {decision.reason}"), "authz_denied"

        # Step 6: invoke
        context = ToolContext(
            claims=claims,
            request_id=request_id,
            backends=self._backends,
            cancel_event=cancel_event or asyncio.Event(),
        )
        return await self._invoke(descriptor, arguments, context, fields)

    async def _invoke(
        self,
        descriptor: ToolDescriptor,
        arguments: dict[str, Any],
        context: ToolContext,
        fields: dict[str, Any],
    ) -> tuple[ToolResult, str]:
        task = asyncio.ensure_future(self._run_handler(descriptor, arguments, context))
        cancel_waiter = asyncio.ensure_future(context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()

        # A cancelled caller never sees a result, even one that raced in.
        if cancel_waiter in done:
            return Failure(ErrorKind.CANCELLED, "Request cancelled by caller"), "call_cancelled"
        if task not in done:
            fields["timeout_seconds"] = self._timeout
            return (
                Failure(ErrorKind.TIMEOUT, f"Tool '{descriptor.name}' timed out after {self._timeout:g}s"),
                "call_timed_out",
            )

        try:
            value = task.result()
        except asyncio.CancelledError:
            return Failure(ErrorKind.CANCELLED, "Tool call was cancelled"), "call_cancelled"
        except Exception as e:
            fields["error_type"] = type(e).__name__
            logger.exception(
                "Tool handler raised",
                extra={"event_data": {"request_id": context.request_id, "tool": descriptor.name}},
            )
            return Failure(ErrorKind.INTERNAL_ERROR, INTERNAL_ERROR_MESSAGE), "call_failed"

        if isinstance(value, Failure):
            return value, "call_failed"
        if isinstance(value, Success):
            value = value.payload
        if not isinstance(value, Mapping):
            fields["error_type"] = "InvalidHandlerResult"
            logger.error(
                "Tool handler returned %s instead of a mapping",
                type(value).__name__,
                extra={"event_data": {"request_id": context.request_id, "tool": descriptor.name}},
            )
            return Failure(ErrorKind.INTERNAL_ERROR, INTERNAL_ERROR_MESSAGE), "call_failed"

        return Success(dict(value)), "call_succeeded"

    async def _run_handler(
        self, descriptor: ToolDescriptor, arguments: dict[str, Any], context: ToolContext
    ) -> Any:
        # Queueing for a slot counts against the handler's time budget.
        await self._semaphore.acquire()
        if inspect.iscoroutinefunction(descriptor.handler):
            try:
                return await descriptor.handler(arguments, context)
            finally:
                self._semaphore.release()

        # Threads cannot be interrupted: a timed-out sync handler keeps
        # running in the background and keeps its slot until it returns.
        loop = asyncio.get_running_loop()
        call = functools.partial(
            contextvars.copy_context().run,
            self._call_sync_handler,
            loop,
            descriptor.handler,
            arguments,
            context,
        )
        try:
            worker = loop.run_in_executor(None, call)
        except BaseException:
            self._semaphore.release()
            raise
        result = await worker
        if inspect.isawaitable(result):
            result = await result
        return result

    def _call_sync_handler(
        self,
        loop: asyncio.AbstractEventLoop,
        handler: Callable[..., Any],
        arguments: dict[str, Any],
        context: ToolContext,
    ) -> Any:
        # Runs in the worker thread; the slot is returned on the event loop.
        try:
            return handler(arguments, context)
        finally:
            loop.call_soon_threadsafe(self._semaphore.release)

    def _finish(
        self,
        labels: Mapping[str, str],
        result: ToolResult,
        event: str,
        fields: dict[str, Any],
        started: float,
    ) -> None:
        duration_ms = (self._clock() - started) * 1000.0
        outcome = Outcome.from_result(result)
        fields["outcome"] = outcome.value
        fields["duration_ms"] = round(duration_ms, 3)
        if not result.ok:
            fields["error_kind"] = result.kind.value

        try:
            self._sink.record_call(labels["tool"], outcome, duration_ms)
            self._sink.log(event, fields)
        except Exception:
            # A broken sink must not turn a finished call into a failure.
            logger.exception("Metrics sink failed", extra={"event_data": dict(fields)})

    async def list_tools(self, token: str | None) -> list[ToolDescriptor]:
        """
        Return the tools the caller is allowed to see.

        Raises:
            AuthError: token verification failed
        """
        try:
            claims = await self._verifier.verify(token)
        except AuthError as e:
            self._sink.log("list_auth_failed", {"reason": e.kind.value})
            raise
        tools = self._evaluator.visible_tools(claims, self._registry)
        self._log_listing(claims, tools)
        return sorted(tools, key=lambda t: t.name)

    def _log_listing(self, claims: Claims, tools: list[ToolDescriptor]) -> None:
        self._sink.log(
            "tools_listed",
            {
                "subject": claims.subject,
                "total_tools": len(self._registry),
                "authorized_tools": sorted(t.name for t in tools),
            },
        )
