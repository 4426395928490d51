#!/usr/bin/env python3
"""
Control plane - scoped RBAC API and tenant-enforcing observability proxy.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)


def mint_dev_token(user_id: str, email: str = None, name: str = None) -> str:
    """Mint a bearer token for AUTH_MODE=signed (local development)."""
    from controlplane.auth.base import VerifiedIdentity
    from controlplane.auth.config import load_auth_config
    from controlplane.auth.session import SignedTokenAuthenticator

    cfg = load_auth_config()
    if not cfg.token_secret:
        raise SystemExit("AUTH_TOKEN_SECRET is required to mint dev tokens")
    authn = SignedTokenAuthenticator(cfg.token_secret, ttl_seconds=cfg.token_ttl_seconds)
    return authn.mint(VerifiedIdentity(user_id=user_id, email=email, name=name))


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Control-plane API server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the API (Postgres via POSTGRES_DSN, OIDC via OIDC_ISSUER/OIDC_AUDIENCE)
  python main.py --serve

  # Local development without Postgres or an IdP
  DEV_MEMORY_STORE=1 AUTH_MODE=signed AUTH_TOKEN_SECRET=dev python main.py --serve
  AUTH_TOKEN_SECRET=dev python main.py --mint-token alice --email alice@example.com
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--mint-token", metavar="USER_ID", help="Print a signed dev token for USER_ID")
    parser.add_argument("--email", help="Email claim for --mint-token")
    parser.add_argument("--name", help="Name claim for --mint-token")

    args = parser.parse_args()

    if args.serve:
        from controlplane.api.server import run

        run(host=args.host, port=args.port)
        return

    if args.mint_token:
        print(mint_dev_token(args.mint_token, email=args.email, name=args.name))
        return

    parser.print_help()


if __name__ == "__main__":
    main()
