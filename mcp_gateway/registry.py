"""
Tool registry: the set of tools the gateway can dispatch to.

The registry is an explicit object built once at startup and handed to the
dispatcher; nothing reads tools from module-level state. Registration
happens during boot, after which the registry is sealed and becomes a
read-only lookup table that concurrent requests share without locking.

Each tool declares:
- a JSON Schema for its arguments (checked against the meta-schema at
  registration, enforced on every call)
- a capability tag (e.g. "k8s:read") that policy rules may grant
- a handler called as handler(arguments, context)
"""

import asyncio
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from jsonschema import validators
from jsonschema.exceptions import SchemaError

from mcp_gateway.auth import Claims
from mcp_gateway.config import ConfigError, ConfigErrorKind


@dataclass(frozen=True)
class ToolContext:
    """
    Per-call context passed to a handler next to its arguments.

    Attributes:
        claims: Verified caller identity
        request_id: Correlation id used in every log line for this call
        backends: Injected clients (e.g. {"k8s": CoreV1Api()}), never globals
        cancel_event: Set when the caller went away; long-running handlers
                      should check it between steps
    """

    claims: Claims
    request_id: str
    backends: Mapping[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


Handler = Callable[[Mapping[str, Any], ToolContext], Any]


@dataclass(frozen=True)
class ToolDescriptor:
    """
    One registered tool.

    required_capability is the tag policy rules can grant instead of the
    tool name (e.g. "k8s:read"). The handler takes (arguments, context)
    and may be sync or async.
    """

    name: str
    input_schema: Mapping[str, Any]
    required_capability: str
    handler: Handler
    description: str = ""


class ToolRegistry:
    """
    Explicit catalogue of the tools a gateway serves.

    Tools are registered during startup, then the registry is sealed and
    only read. Each input schema is checked once at registration and its
    compiled validator is kept for per-call argument validation.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._validators: dict[str, Any] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        """End the registration phase. Later register() calls fail."""
        self._sealed = True

    def register(self, descriptor: ToolDescriptor) -> None:
        """
        Add a tool.

        Raises:
            ConfigError(REGISTRY_SEALED): called after seal()
            ConfigError(DUPLICATE_TOOL): the name is already registered
            ConfigError(INVALID_SCHEMA): input_schema is not a valid object schema
        """
        if self._sealed:
            raise ConfigError(
                ConfigErrorKind.REGISTRY_SEALED,
                f"Cannot register '{descriptor.name}': registry is sealed",
            )
        if not descriptor.name:
            raise ConfigError(ConfigErrorKind.INVALID_SCHEMA, "Tool name must not be empty")
        if descriptor.name in self._tools:
            raise ConfigError(
                ConfigErrorKind.DUPLICATE_TOOL, f"Tool '{descriptor.name}' is already registered"
            )

        schema = descriptor.input_schema
        if not isinstance(schema, Mapping) or schema.get("type") != "object":
            raise ConfigError(
                ConfigErrorKind.INVALID_SCHEMA,
                f"Tool '{descriptor.name}': input schema must be an object schema",
            )
        validator_cls = validators.validator_for(schema)
        try:
            validator_cls.check_schema(schema)
        except SchemaError as e:
            raise ConfigError(
                ConfigErrorKind.INVALID_SCHEMA,
                f"Tool '{descriptor.name}': invalid input schema: {e.message}",
            ) from e

        self._tools[descriptor.name] = descriptor
        self._validators[descriptor.name] = validator_cls(schema)

    def tool(
        self,
        name: str | None = None,
        *,
        capability: str,
        input_schema: Mapping[str, Any] | None = None,
        description: str | None = None,
    ) -> Callable[[Handler], Handler]:
        """Register the decorated function as a tool on this registry."""

        def wrapper(fn: Handler) -> Handler:
            self.register(
                ToolDescriptor(
                    name=name or fn.__name__,
                    input_schema=input_schema or {"type": "object"},
                    required_capability=capability,
                    handler=fn,
                    description=description or (fn.__doc__ or "").strip(),
                )
            )
            return fn

        return wrapper

    def lookup(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def validate_arguments(
        self, descriptor: ToolDescriptor, arguments: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        """
        Check arguments against the tool's schema.

        Returns a list of error details (empty when valid), ordered by
        argument path so the response is stable across calls.
        """
        validator = self._validators[descriptor.name]
        errors = []
        for error in validator.iter_errors(dict(arguments)):
            errors.append(
                {
                    "path": "/".join(str(p) for p in error.absolute_path),
                    "message": error.message,
                    "validator": error.validator,
                }
            )
        return sorted(errors, key=lambda e: (e["path"], e["message"]))

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
