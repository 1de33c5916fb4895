"""Test helper that normalizes sys.path and environment defaults."""

from __future__ import annotations

import base64
import json
import os
import sys
import tempfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


_SERVICE_ACCOUNT = base64.b64encode(
    json.dumps({"type": "service_account", "client_email": "svc@example.com"}).encode("utf-8")
).decode("ascii")

_DEFAULT_ENV_VARS: dict[str, str] = {
    "DOCUMENT_AI_PROJECT_ID": "test-project",
    "DOCUMENT_AI_PROCESSOR_ID": "test-processor",
    "SERVICE_ACCOUNT_BASE64": _SERVICE_ACCOUNT,
    "PDFCO_API_KEY": "test-pdfco-key",
    "BASE_URL": "http://testserver",
    "INPUT_FOLDER": str(Path(tempfile.gettempdir()) / "kabalot-test-input"),
}

for key, value in _DEFAULT_ENV_VARS.items():
    os.environ.setdefault(key, value)
