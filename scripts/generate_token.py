"""
CLI utility to mint bearer tokens for exercising the gateway locally.

In the cluster, tokens come from Keycloak. This script stands in for it:
it signs tokens with either a shared HS256 secret (matching
MCP_JWT_SECRET_KEY) or an RSA private key whose public half it can print
as a JWKS document for the gateway to fetch.

Usage examples:

    # Viewer token signed with the dev shared secret
    python -m scripts.generate_token --sub alice --role viewer \\
        --secret dev-secret-change-me-32-bytes-long!!

    # RS256 token; creates dev-signing-key.pem on first use
    python -m scripts.generate_token --sub bob --role sre --key dev-signing-key.pem

    # Print the JWKS for that key (serve it at MCP_JWKS_URL)
    python -m scripts.generate_token --key dev-signing-key.pem --print-jwks

    # Expired token (for testing rejection)
    python -m scripts.generate_token --sub alice --role viewer --exp-hours -1 --key dev-signing-key.pem

Call a tool with it:

    curl -X POST http://localhost:8080/mcp \\
      -H "Content-Type: application/json" \\
      -H "Authorization: Bearer <token>" \\
      -d '{"jsonrpc":"2.0","id":1,"method":"tools/call",
           "params":{"name":"diagnose_pod","arguments":{"namespace":"default","pod_name":"web-0"}}}'
"""

import argparse
import datetime
import json
from pathlib import Path

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

DEFAULT_KID = "dev-key-1"


def load_or_create_key(path: Path) -> rsa.RSAPrivateKey:
    """Load an RSA private key from PEM, generating and saving one if missing."""
    if path.exists():
        return serialization.load_pem_private_key(path.read_bytes(), password=None)

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return key


def public_jwks(key: rsa.RSAPrivateKey, kid: str = DEFAULT_KID) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


def generate_token(
    subject: str,
    roles: list[str],
    issuer: str,
    audience: str,
    *,
    secret: str | None = None,
    private_key: rsa.RSAPrivateKey | None = None,
    kid: str = DEFAULT_KID,
    exp_hours: float = 8.0,
) -> str:
    """
    Generate a signed token shaped like a Keycloak access token.

    Exactly one of `secret` (HS256) or `private_key` (RS256) must be given.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "iss": issuer,
        "aud": audience,
        "sub": subject,
        "realm_access": {"roles": roles},
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }

    if secret:
        return jwt.encode(payload, secret, algorithm="HS256")
    if private_key is None:
        raise ValueError("either a secret or a private key is required")
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate bearer tokens for the MCP tool gateway.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--sub", default="dev-user", help="Subject claim")
    parser.add_argument(
        "--role",
        nargs="+",
        default=[],
        help="Realm roles to embed (e.g. viewer sre mcp-admin)",
    )
    parser.add_argument("--issuer", default="http://localhost:8081/realms/mcp")
    parser.add_argument("--audience", default="mcp-gateway")
    parser.add_argument("--secret", help="HS256 shared secret (matches MCP_JWT_SECRET_KEY)")
    parser.add_argument("--key", type=Path, help="RSA private key PEM for RS256 (created if missing)")
    parser.add_argument("--kid", default=DEFAULT_KID)
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until the token expires (negative = already expired, default: 8)",
    )
    parser.add_argument(
        "--print-jwks", action="store_true", help="Print the JWKS for --key and exit"
    )

    args = parser.parse_args()

    if not args.secret and not args.key:
        parser.error("one of --secret or --key is required")

    private_key = load_or_create_key(args.key) if args.key else None

    if args.print_jwks:
        if private_key is None:
            parser.error("--print-jwks needs --key")
        print(json.dumps(public_jwks(private_key, args.kid), indent=2))
        return

    token = generate_token(
        subject=args.sub,
        roles=args.role,
        issuer=args.issuer,
        audience=args.audience,
        secret=args.secret,
        private_key=private_key,
        kid=args.kid,
        exp_hours=args.exp_hours,
    )

    print(f"Subject:    {args.sub}")
    print(f"Roles:      {args.role}")
    print(f"Issuer:     {args.issuer}")
    print(f"Audience:   {args.audience}")
    print(f"Algorithm:  {'HS256' if args.secret else 'RS256'}")
    print()
    print(f"Token: {token}")


if __name__ == "__main__":
    main()
