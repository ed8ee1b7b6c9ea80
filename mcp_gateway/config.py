"""
Gateway configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables (prefixed with MCP_) or a local .env file.

In Kubernetes these are injected via the Deployment manifest:
- MCP_JWT_ISSUER, MCP_JWT_AUDIENCE and MCP_JWKS_URL point at the Keycloak realm
- MCP_POLICY_FILE points at the mounted authorization policy ConfigMap
- MCP_HANDLER_TIMEOUT_SECONDS and MCP_MAX_CONCURRENCY protect the cluster API
"""

from enum import Enum
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Gateway configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `jwt_issuer` reads from MCP_JWT_ISSUER and
    `max_concurrency` reads from MCP_MAX_CONCURRENCY.
    """

    # --- Server settings ---

    # "0.0.0.0" is required inside containers so traffic from outside the
    # pod network namespace can reach the server.
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # --- Token verification ---

    # Issuer URL exactly as it appears in the "iss" claim,
    # e.g. http://keycloak.local/realms/mcp
    jwt_issuer: str = "http://localhost:8081/realms/mcp"

    # Audience the gateway expects in the "aud" claim.
    jwt_audience: str = "mcp-gateway"

    # JWKS endpoint. When empty, derived from the issuer using Keycloak's
    # well-known layout (<issuer>/protocol/openid-connect/certs).
    jwks_url: str = ""

    jwt_algorithms: list[str] = ["RS256"]

    # Local development only: when set, tokens are verified with this HS256
    # shared secret instead of the issuer's key set.
    jwt_secret_key: str = ""

    # Clock skew tolerance applied to "exp".
    jwt_leeway_seconds: int = 0

    # --- Key set cache ---

    jwks_cache_ttl_seconds: float = 300.0
    # Lower bound between forced refreshes triggered by an unknown "kid".
    jwks_min_refresh_seconds: float = 30.0
    jwks_fetch_timeout_seconds: float = 5.0

    # --- Dispatch ---

    handler_timeout_seconds: float = 30.0
    max_concurrency: int = 16

    # --- Authorization policy ---

    policy_file: Path = Path("config/policy.yaml")

    # --- Kubernetes backend for the bundled tools ---

    kube_enabled: bool = True
    kube_context: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def resolved_jwks_url(self) -> str:
        """Return the configured JWKS URL, or derive Keycloak's from the issuer."""
        if self.jwks_url:
            return self.jwks_url
        return self.jwt_issuer.rstrip("/") + "/protocol/openid-connect/certs"


# Module-level instance used by the server entry point. Library code takes a
# Settings argument instead so tests can construct their own.
settings = Settings()


class ConfigErrorKind(str, Enum):
    """Startup problems that stop the gateway from serving."""

    DUPLICATE_TOOL = "DuplicateTool"
    INVALID_SCHEMA = "InvalidSchema"
    REGISTRY_SEALED = "RegistrySealed"
    INVALID_POLICY = "InvalidPolicy"


class ConfigError(Exception):
    """
    A startup-time configuration problem (tool registration or policy file).

    These are fatal at boot: the server refuses to start rather than serve
    with a partial registry or policy.
    """

    def __init__(self, kind: ConfigErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)
