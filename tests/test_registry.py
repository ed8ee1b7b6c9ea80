"""
Tests for the tool registry (mcp_gateway/registry.py).

Tests cover:
- Registration errors (duplicate name, invalid schema, sealed registry)
- Lookup
- The @registry.tool decorator
- Argument validation against the registered schema
"""

import pytest

from mcp_gateway.config import ConfigError, ConfigErrorKind
from mcp_gateway.registry import ToolDescriptor, ToolRegistry

from tests.conftest import POD_SCHEMA


def _handler(arguments, context):
    return {}


def _descriptor(name="diagnose_pod", schema=None, capability="k8s:read"):
    return ToolDescriptor(name, schema or POD_SCHEMA, capability, _handler)


class TestRegister:
    def test_registered_tool_can_be_looked_up(self):
        registry = ToolRegistry()
        descriptor = _descriptor()

        registry.register(descriptor)

        assert registry.lookup("diagnose_pod") is descriptor
        assert "diagnose_pod" in registry
        assert len(registry) == 1

    def test_duplicate_name_is_rejected(self):
        registry = ToolRegistry()
        registry.register(_descriptor())

        with pytest.raises(ConfigError) as exc_info:
            registry.register(_descriptor(capability="k8s:write"))

        assert exc_info.value.kind == ConfigErrorKind.DUPLICATE_TOOL
        # The first registration is untouched
        assert registry.lookup("diagnose_pod").required_capability == "k8s:read"

    @pytest.mark.parametrize(
        "schema",
        [
            {"type": "string"},
            {"properties": {"namespace": {"type": "string"}}},
            {"type": "object", "properties": {"namespace": {"type": 5}}},
            {"type": "object", "required": "namespace"},
        ],
    )
    def test_invalid_schema_is_rejected(self, schema):
        registry = ToolRegistry()

        with pytest.raises(ConfigError) as exc_info:
            registry.register(_descriptor(schema=schema))

        assert exc_info.value.kind == ConfigErrorKind.INVALID_SCHEMA
        assert "diagnose_pod" not in registry

    def test_empty_name_is_rejected(self):
        with pytest.raises(ConfigError):
            ToolRegistry().register(_descriptor(name=""))

    def test_register_after_seal_fails(self):
        registry = ToolRegistry()
        registry.register(_descriptor())
        registry.seal()

        with pytest.raises(ConfigError) as exc_info:
            registry.register(_descriptor(name="list_pods"))

        assert exc_info.value.kind == ConfigErrorKind.REGISTRY_SEALED
        assert registry.sealed
        assert registry.names() == ["diagnose_pod"]


class TestLookup:
    def test_unknown_name_returns_none(self, registry):
        assert registry.lookup("drop_database") is None

    def test_lookup_is_stable(self, registry):
        """Repeated lookups on a sealed registry return the same descriptor."""
        first = registry.lookup("diagnose_pod")

        assert all(registry.lookup("diagnose_pod") is first for _ in range(5))

    def test_names_are_sorted(self, registry):
        assert registry.names() == sorted(d.name for d in registry)


class TestToolDecorator:
    def test_decorator_registers_function(self):
        registry = ToolRegistry()

        @registry.tool(capability="demo:hello")
        def hello_world(arguments, context):
            """Say hello."""
            return {"message": "hello"}

        descriptor = registry.lookup("hello_world")
        assert descriptor.handler is hello_world
        assert descriptor.required_capability == "demo:hello"
        assert descriptor.description == "Say hello."
        assert descriptor.input_schema == {"type": "object"}

    def test_decorator_with_explicit_name_and_schema(self):
        registry = ToolRegistry()

        @registry.tool("pods", capability="k8s:read", input_schema=POD_SCHEMA, description="Pods")
        async def list_things(arguments, context):
            return {}

        descriptor = registry.lookup("pods")
        assert descriptor.input_schema == POD_SCHEMA
        assert descriptor.description == "Pods"
        assert registry.lookup("list_things") is None


class TestValidateArguments:
    def test_valid_arguments_produce_no_errors(self, registry):
        descriptor = registry.lookup("diagnose_pod")

        errors = registry.validate_arguments(descriptor, {"namespace": "default", "pod_name": "web-0"})

        assert errors == []

    def test_missing_required_argument(self, registry):
        descriptor = registry.lookup("diagnose_pod")

        errors = registry.validate_arguments(descriptor, {"namespace": "default"})

        assert len(errors) == 1
        assert errors[0]["validator"] == "required"
        assert "pod_name" in errors[0]["message"]

    def test_errors_carry_argument_path(self, registry):
        descriptor = registry.lookup("diagnose_pod")

        errors = registry.validate_arguments(descriptor, {"namespace": 42, "pod_name": ""})

        assert [e["path"] for e in errors] == ["namespace", "pod_name"]
        assert [e["validator"] for e in errors] == ["type", "minLength"]
