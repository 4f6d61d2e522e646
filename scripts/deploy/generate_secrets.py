#!/usr/bin/env python3
"""Generate the secrets an n8n deployment needs.

Values are printed, never written: copy them into ``.env`` yourself. Losing
``N8N_ENCRYPTION_KEY`` makes every stored n8n credential unreadable.
"""

from __future__ import annotations

import argparse
import base64
import secrets
from pathlib import Path

from dotenv import dotenv_values


# Key name -> random byte count before base64 encoding.
SECRET_SPECS: dict[str, int] = {
    "N8N_ENCRYPTION_KEY": 32,
    "POSTGRES_PASSWORD": 24,
    "POSTGRES_NON_ROOT_PASSWORD": 24,
}

PLACEHOLDER_PREFIX = "change"


def generate_secret(num_bytes: int) -> str:
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def generate_secrets() -> dict[str, str]:
    return {key: generate_secret(size) for key, size in SECRET_SPECS.items()}


def unset_secret_keys(env_path: Path) -> list[str]:
    """Keys from :data:`SECRET_SPECS` that are empty or still a placeholder in *env_path*."""
    values = dotenv_values(env_path) if env_path.exists() else {}
    out: list[str] = []
    for key in SECRET_SPECS:
        value = str(values.get(key) or "").strip()
        if not value or value.lower().startswith(PLACEHOLDER_PREFIX):
            out.append(key)
    return out


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Generate secrets for the n8n .env file")
    parser.add_argument(
        "--env-file",
        default=None,
        help="Only print secrets that are missing or still placeholders in this .env file",
    )
    args = parser.parse_args(argv)

    generated = generate_secrets()
    if args.env_file:
        wanted = unset_secret_keys(Path(args.env_file))
        if not wanted:
            print(f"All secrets are already set in {args.env_file}")
            return
        generated = {key: value for key, value in generated.items() if key in wanted}

    print("# Generated secrets for n8n; add these to your .env file")
    for key, value in generated.items():
        print(f"{key}={value}")
    print("# Keep N8N_ENCRYPTION_KEY safe: it cannot be recovered and is needed to decrypt stored credentials.")


if __name__ == "__main__":
    main()
