"""Operational checks for the token service configuration.

Commands:

``check``
    Load ``AppSettings`` from the given ``.env`` file and report a missing
    ``TOKEN_ENCRYPTION_SECRET`` or malformed refresh, breaker and broker values.
``record`` / ``verify``
    Store, then compare, a SHA256 fingerprint of the ``.env`` file. An
    unexpected change (for example a replaced encryption secret that would
    make every stored token unreadable) fails ``verify``.
``broker``
    Print the effective settings without secrets and ping the OAuth broker.
``rotate``
    Re-encrypt every stored credential under the current encryption secret
    after the old one was moved to ``TOKEN_ENCRYPTION_PREVIOUS_SECRETS``.

Example usages::

    python -m scripts.check_env record --env-file /opt/oauth/.env \
        --hash-file /opt/oauth/.env.sha256
    python -m scripts.check_env verify --env-file /opt/oauth/.env \
        --hash-file /opt/oauth/.env.sha256
    python -m scripts.check_env broker --env-file /opt/oauth/.env
    python -m scripts.check_env rotate --env-file /opt/oauth/.env
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import sys
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from oauth_lifecycle.clients import OAuthBrokerClient, SQLiteCredentialStore
from oauth_lifecycle.core.config import AppSettings, _load_env_file
from oauth_lifecycle.services import TokenCipherService

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_BROKER_UNREACHABLE = 4
EXIT_RUNTIME_ERROR = 5

# name -> (help, takes --hash-file)
COMMANDS: dict[str, tuple[str, bool]] = {
    "check": ("Validate settings only.", False),
    "record": ("Validate settings and write the .env fingerprint.", True),
    "verify": ("Validate settings and compare the .env fingerprint with the recorded one.", True),
    "broker": ("Validate settings, print them and ping the OAuth broker health endpoint.", False),
    "rotate": ("Re-encrypt the credential store under the current encryption secret.", False),
}


def _fingerprint(env_file: Path) -> str:
    return hashlib.sha256(env_file.read_bytes()).hexdigest()


def _load_settings(env_file: Path) -> AppSettings:
    """Load settings from the supplied env file, raising on invalid values."""
    if not env_file.exists():
        raise FileNotFoundError(f"Environment file {env_file} not found.")
    _load_env_file(str(env_file))
    return AppSettings()  # type: ignore[call-arg]


def describe_settings(settings: AppSettings) -> list[str]:
    """Human readable summary of the effective settings, secrets omitted."""
    broker = settings.broker
    return [
        f"environment: {settings.environment}",
        f"credential store: {settings.storage.credential_db_path}",
        f"refresh: max_attempts={settings.refresh.max_attempts} "
        f"buffer_minutes={settings.refresh.buffer_minutes or 'provider default'} "
        f"timeout={settings.refresh.request_timeout_seconds}s "
        f"max_backoff={settings.refresh.max_backoff_ms}ms",
        "refresh sweep: "
        + (
            f"every {settings.refresh.sweep_interval_seconds}s batch_size={settings.refresh.sweep_batch_size}"
            if settings.refresh.sweep_interval_seconds
            else "disabled"
        ),
        f"circuit breaker: threshold={settings.circuit_breaker.failure_threshold} "
        f"reset_timeout={settings.circuit_breaker.reset_timeout_ms}ms",
        f"broker: {broker.url or 'disabled'}"
        + (f" (bypassed for {', '.join(broker.disabled_providers)})" if broker.disabled_providers else ""),
        f"validation cache: ttl={settings.validation.cache_ttl_seconds}s "
        f"probe={'on' if settings.validation.probe_enabled else 'off'}",
        "previous encryption secrets: "
        f"{len(settings.security.previous_token_encryption_secrets)}",
    ]


def _record(env_file: Path, hash_file: Path) -> int:
    fingerprint = _fingerprint(env_file)
    hash_file.write_text(f"{fingerprint}\n", encoding="utf-8")
    print(f"Recorded fingerprint {fingerprint} in {hash_file}")
    return EXIT_OK


def _verify(env_file: Path, hash_file: Path) -> int:
    if not hash_file.exists():
        print(
            f"No recorded fingerprint at {hash_file}; run 'record' first.",
            file=sys.stderr,
        )
        return EXIT_RUNTIME_ERROR

    recorded = hash_file.read_text(encoding="utf-8").strip()
    current = _fingerprint(env_file)
    if recorded != current:
        print(
            f"{env_file} changed since its fingerprint was recorded "
            f"(recorded {recorded}, now {current}). "
            "Confirm the encryption secret and broker settings before restarting.",
            file=sys.stderr,
        )
        return EXIT_CHECKSUM_ERROR
    print(f"{env_file} matches its recorded fingerprint.")
    return EXIT_OK


def _check_broker(settings: AppSettings) -> int:
    for line in describe_settings(settings):
        print(line)
    if settings.broker.url is None:
        print("No OAuth broker configured; refreshes go directly to providers.")
        return EXIT_OK

    client = OAuthBrokerClient(
        str(settings.broker.url), timeout_seconds=settings.broker.timeout_seconds
    )
    if asyncio.run(client.health()):
        print(f"OAuth broker at {client.base_url} is healthy.")
        return EXIT_OK
    print(
        f"OAuth broker at {client.base_url} did not pass its health check; "
        "refreshes will fall back to direct provider calls.",
        file=sys.stderr,
    )
    return EXIT_BROKER_UNREACHABLE


def _rotate(settings: AppSettings) -> int:
    security = settings.security
    if not security.previous_token_encryption_secrets:
        print(
            "TOKEN_ENCRYPTION_PREVIOUS_SECRETS is empty; nothing to rotate from.",
            file=sys.stderr,
        )
        return EXIT_VALIDATION_ERROR

    cipher = TokenCipherService(
        secret=security.token_encryption_secret,
        previous_secrets=security.previous_token_encryption_secrets,
    )
    store = SQLiteCredentialStore(settings.storage.credential_db_path, cipher=cipher)
    count = store.rotate_encryption()
    print(f"Re-encrypted {count} credential(s) in {settings.storage.credential_db_path}.")
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate token service settings, detect .env drift and rotate keys."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (help_text, takes_hash_file) in COMMANDS.items():
        subparser = subparsers.add_parser(name, help=help_text)
        subparser.add_argument(
            "--env-file",
            default=".env",
            type=Path,
            help="Environment file to load (default: ./.env).",
        )
        if takes_hash_file:
            subparser.add_argument(
                "--hash-file",
                required=True,
                type=Path,
                help="File holding the recorded .env fingerprint.",
            )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env_file: Path = args.env_file

    try:
        settings = _load_settings(env_file)
    except FileNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_RUNTIME_ERROR
    except ValidationError as exc:
        print(
            f"Settings in {env_file} failed validation:\n{exc.json(indent=2)}",
            file=sys.stderr,
        )
        return EXIT_VALIDATION_ERROR
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Could not load settings from {env_file}: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    handlers: dict[str, Callable[[], int]] = {
        "check": lambda: EXIT_OK,
        "record": lambda: _record(env_file, args.hash_file),
        "verify": lambda: _verify(env_file, args.hash_file),
        "broker": lambda: _check_broker(settings),
        "rotate": lambda: _rotate(settings),
    }
    try:
        return handlers[args.command]()
    except ValueError as exc:
        # Raised by the cipher when a row was encrypted under an unknown secret.
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
