"""Pre-flight checks for a receipt service deployment.

Loads the deployment ``.env`` through ``AppSettings``, confirms the Document AI
credentials are usable and reports which optional integrations (PDF unlock,
SMTP notifications, live exchange rates) are active. The ``record`` and
``verify`` commands additionally pin the env file to a SHA256 baseline so an
unexpected edit is caught before the service restarts.

Example usages::

    python -m scripts.check_env check --env-file /opt/kabalot/.env --strict

    python -m scripts.check_env record --env-file /opt/kabalot/.env \
        --hash-file /opt/kabalot/.env.sha256

    # from cron/systemd
    python -m scripts.check_env verify --env-file /opt/kabalot/.env \
        --hash-file /opt/kabalot/.env.sha256
"""

from __future__ import annotations

import argparse
import base64
import binascii
import hashlib
import json
import sys
from pathlib import Path
from typing import Callable, List, Tuple

from pydantic import ValidationError

from kabalot.core.config import AppSettings, MissingConfigurationError, _load_env_file

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_RUNTIME_ERROR = 5

REQUIRED_ENV_KEYS = (
    "DOCUMENT_AI_PROJECT_ID",
    "DOCUMENT_AI_PROCESSOR_ID",
    "SERVICE_ACCOUNT_BASE64",
)


def _service_account_email(encoded: str) -> str:
    """Return the client e-mail of the encoded service account JSON."""
    try:
        info = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise MissingConfigurationError(
            "SERVICE_ACCOUNT_BASE64 is not base64 encoded JSON."
        ) from exc
    email = info.get("client_email") if isinstance(info, dict) else None
    if not email:
        raise MissingConfigurationError("SERVICE_ACCOUNT_BASE64 has no client_email.")
    return email


def _load_settings(env_file: Path) -> AppSettings:
    _load_env_file(str(env_file))
    settings = AppSettings()  # type: ignore[call-arg]
    if not settings.document_ai.is_configured:
        raise MissingConfigurationError(
            "Receipt extraction requires " + ", ".join(REQUIRED_ENV_KEYS) + "."
        )
    _service_account_email(settings.document_ai.service_account_base64 or "")
    return settings


def _integrations(settings: AppSettings) -> List[Tuple[str, bool, str]]:
    """Describe each optional integration as (name, active, detail)."""
    rates = settings.exchange_rate
    return [
        (
            "PDF unlock",
            bool(settings.pdf_unlock.api_key),
            "PDFCO_API_KEY set" if settings.pdf_unlock.api_key else "PDFCO_API_KEY missing",
        ),
        (
            "E-mail notifications",
            settings.mail.is_configured,
            f"{settings.mail.host}:{settings.mail.port}"
            if settings.mail.is_configured
            else "EMAIL_USER/EMAIL_PASS missing",
        ),
        (
            "Exchange rates",
            bool(rates.endpoint_url),
            rates.endpoint_url or f"static rate {rates.fallback_rate}",
        ),
    ]


def _report(settings: AppSettings, strict: bool) -> int:
    print(
        f"Document AI: {settings.document_ai.project_id}/"
        f"{settings.document_ai.location}/{settings.document_ai.processor_id}"
    )
    missing = []
    for name, active, detail in _integrations(settings):
        print(f"{name}: {'on' if active else 'off'} ({detail})")
        if not active:
            missing.append(name)
    if strict and missing:
        print("Strict mode: inactive integrations " + ", ".join(missing), file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    return EXIT_OK


def _compute_hash(env_file: Path) -> str:
    return hashlib.sha256(env_file.read_bytes()).hexdigest()


def _record_checksum(env_file: Path, hash_file: Path) -> int:
    checksum = _compute_hash(env_file)
    hash_file.write_text(f"{checksum}\n", encoding="utf-8")
    print(f"Recorded checksum to {hash_file} ({checksum})")
    return EXIT_OK


def _verify_checksum(env_file: Path, hash_file: Path) -> int:
    if not hash_file.exists():
        print(
            f"No checksum baseline at {hash_file}; run the 'record' command first.",
            file=sys.stderr,
        )
        return EXIT_RUNTIME_ERROR

    expected = hash_file.read_text(encoding="utf-8").strip()
    actual = _compute_hash(env_file)
    if expected != actual:
        print(
            f"Environment file {env_file} changed since the baseline was recorded\n"
            f"  expected: {expected}\n"
            f"  actual:   {actual}",
            file=sys.stderr,
        )
        return EXIT_CHECKSUM_ERROR
    print("Environment checksum OK.")
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Check receipt service settings and detect .env drift."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    commands = {
        "check": "Validate settings and report optional integrations.",
        "record": "Validate settings and store the checksum baseline.",
        "verify": "Validate settings and compare the checksum with the baseline.",
    }
    for command, help_text in commands.items():
        subparser = subparsers.add_parser(command, help=help_text)
        subparser.add_argument("--env-file", default=".env", type=Path)
        subparser.add_argument(
            "--strict",
            action="store_true",
            help="Fail when an optional integration is not configured.",
        )
        if command != "check":
            subparser.add_argument("--hash-file", required=True, type=Path)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env_file: Path = args.env_file

    if not env_file.exists():
        print(f"Environment file {env_file} does not exist.", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    try:
        settings = _load_settings(env_file)
    except ValidationError as exc:
        print(f"Invalid settings:\n{exc.json(indent=2)}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except MissingConfigurationError as exc:
        print(f"Settings validation failed: {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR

    status = _report(settings, args.strict)
    if status != EXIT_OK:
        return status

    handlers: dict[str, Callable[[], int]] = {
        "check": lambda: EXIT_OK,
        "record": lambda: _record_checksum(env_file, args.hash_file),
        "verify": lambda: _verify_checksum(env_file, args.hash_file),
    }
    return handlers[args.command]()


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
