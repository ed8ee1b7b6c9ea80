"""
Shared test fixtures for the gateway test suite.

Key fixtures:
- make_token: factory for RS256 tokens signed with the test issuer's key
- jwks_server: an in-memory JWKS endpoint (httpx.MockTransport) that counts
  fetches and can be told to fail or rotate keys
- verifier: a TokenVerifier wired to jwks_server
- sink: a MetricsSink that records every call for assertions
- make_dispatcher: factory for a Dispatcher over a small test registry

No network is used: the JWKS endpoint and the HTTP app both run in-process.
"""

import asyncio
import datetime
import json

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from mcp_gateway.auth import JWKSCache, TokenVerifier
from mcp_gateway.dispatcher import Dispatcher
from mcp_gateway.policy import AuthorizationEvaluator, AuthorizationRule, PolicySet, PolicyStore
from mcp_gateway.registry import ToolDescriptor, ToolRegistry

ISSUER = "http://keycloak.test/realms/mcp"
AUDIENCE = "mcp-gateway"
JWKS_URL = ISSUER + "/protocol/openid-connect/certs"
KID = "test-key-1"


# ---------------------------------------------------------------------------
# Keys and tokens
# ---------------------------------------------------------------------------


def _new_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def jwk_for(private_key: rsa.RSAPrivateKey, kid: str) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return _new_rsa_key()


@pytest.fixture(scope="session")
def other_key() -> rsa.RSAPrivateKey:
    """A key the issuer never published (forged or rotated tokens)."""
    return _new_rsa_key()


@pytest.fixture
def make_token(signing_key):
    """
    Factory fixture for signed tokens.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", roles=["viewer"])
    """

    def _make_token(
        sub: str = "test-user",
        roles: list[str] | None = None,
        issuer: str = ISSUER,
        audience: str | list[str] = AUDIENCE,
        exp_hours: float = 1.0,
        key=None,
        kid: str | None = KID,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_sub: bool = True,
    ) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {"iss": issuer, "aud": audience, "iat": now}
        if include_sub:
            payload["sub"] = sub
        if roles is not None:
            payload["realm_access"] = {"roles": roles}
        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)
        if extra_claims:
            payload.update(extra_claims)

        headers = {"kid": kid} if kid is not None else None
        return jwt.encode(payload, key or signing_key, algorithm="RS256", headers=headers)

    return _make_token


# ---------------------------------------------------------------------------
# JWKS endpoint
# ---------------------------------------------------------------------------


class FakeJWKSServer:
    """
    In-memory JWKS endpoint.

    Attributes:
        keys: JWKs currently published
        fail: when set, requests fail with a connection error
        time_out: when set, requests fail with a read timeout
        delay: seconds to wait before answering (to overlap requests)
        requests: number of requests received
    """

    def __init__(self, keys: list[dict]):
        self.keys = keys
        self.fail = False
        self.time_out = False
        self.delay = 0.0
        self.requests = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if self.time_out:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"keys": list(self.keys)})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def jwks_server(signing_key) -> FakeJWKSServer:
    return FakeJWKSServer([jwk_for(signing_key, KID)])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key_cache(jwks_server, clock) -> JWKSCache:
    return JWKSCache(
        ttl_seconds=300,
        min_refresh_seconds=30,
        http_client=jwks_server.client(),
        clock=clock,
    )


@pytest.fixture
def verifier(key_cache) -> TokenVerifier:
    return TokenVerifier(
        issuer=ISSUER,
        audience=AUDIENCE,
        jwks_url=JWKS_URL,
        algorithms=["RS256"],
        key_cache=key_cache,
    )


# ---------------------------------------------------------------------------
# Metrics sink
# ---------------------------------------------------------------------------


class RecordingSink:
    """MetricsSink that keeps everything it is given."""

    def __init__(self):
        self.calls = []
        self.events = []

    def record_call(self, tool_name, outcome, duration_ms):
        self.calls.append((tool_name, outcome, duration_ms))

    def log(self, event, fields):
        self.events.append((event, dict(fields)))

    def event_names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# ---------------------------------------------------------------------------
# Dispatcher over a test registry
# ---------------------------------------------------------------------------

POD_SCHEMA = {
    "type": "object",
    "properties": {
        "namespace": {"type": "string"},
        "pod_name": {"type": "string", "minLength": 1},
    },
    "required": ["namespace", "pod_name"],
}

LEAKY_SECRET = "db-password=hunter2"


def _diagnose_pod(arguments, context):
    return {"pod": arguments["pod_name"], "healthy": True, "caller": context.claims.subject}


async def _diagnose_deployment(arguments, context):
    return {"deployment": arguments.get("deployment_name"), "healthy": True}


def _remediate_pod_restart(arguments, context):
    return {"restarted": True}


def _explode(arguments, context):
    raise RuntimeError(f"connection failed: {LEAKY_SECRET}")


async def _slow(arguments, context):
    await asyncio.sleep(10)
    return {"done": True}


def _not_a_mapping(arguments, context):
    return ["not", "a", "mapping"]


def build_test_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ToolDescriptor("diagnose_pod", POD_SCHEMA, "k8s:read", _diagnose_pod))
    registry.register(
        ToolDescriptor(
            "diagnose_deployment",
            {"type": "object", "properties": {"deployment_name": {"type": "string"}}},
            "k8s:read",
            _diagnose_deployment,
        )
    )
    registry.register(
        ToolDescriptor("remediate_pod_restart", POD_SCHEMA, "k8s:write", _remediate_pod_restart)
    )
    registry.register(ToolDescriptor("explode", {"type": "object"}, "test:faults", _explode))
    registry.register(ToolDescriptor("slow", {"type": "object"}, "test:faults", _slow))
    registry.register(
        ToolDescriptor("not_a_mapping", {"type": "object"}, "test:faults", _not_a_mapping)
    )
    registry.seal()
    return registry


TEST_POLICY = PolicySet(
    rules=(
        AuthorizationRule("viewer", "diagnose_*"),
        AuthorizationRule("ns-viewer", "diagnose_*", frozenset({"default"})),
        AuthorizationRule("operator", "k8s:*"),
        AuthorizationRule("tester", "test:*"),
    )
)


@pytest.fixture
def registry() -> ToolRegistry:
    return build_test_registry()


@pytest.fixture
def evaluator() -> AuthorizationEvaluator:
    return AuthorizationEvaluator(PolicyStore(TEST_POLICY))


@pytest.fixture
def make_dispatcher(verifier, registry, evaluator, sink):
    """Factory for a Dispatcher; keyword overrides replace any collaborator."""

    def _make_dispatcher(**overrides) -> Dispatcher:
        options = {
            "verifier": verifier,
            "registry": registry,
            "evaluator": evaluator,
            "sink": sink,
            "handler_timeout_seconds": 2.0,
            "max_concurrency": 4,
        }
        options.update(overrides)
        return Dispatcher(**options)

    return _make_dispatcher
