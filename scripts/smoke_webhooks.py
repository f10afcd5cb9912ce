"""
Smoke checks against a running instance.

- GET /health
- POST a signed ping to /webhooks/finix and /webhooks/getstream (200, no record)
- POST an unsigned body to /webhooks/finix (401)

Pings are acknowledged before the ledger, so this is safe against production.
Secrets come from the same environment variables the app reads.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import httpx

# allow running from any directory, e.g. `python scripts/smoke_webhooks.py`
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.config import settings  # noqa: E402
from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.webhooks.verification import compute_signature  # noqa: E402


logger = get_logger(__name__)

PING_BODY = b"{}"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _check_status(resp: httpx.Response, expected: int) -> None:
    if resp.status_code != expected:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="webhooks-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()

    logger.info("Starting smoke checks", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    signed = {
        "finix": {"Finix-Signature": compute_signature(PING_BODY, settings.FINIX_WEBHOOK_SECRET)},
        "getstream": {
            "X-Signature": compute_signature(PING_BODY, settings.GETSTREAM_API_SECRET),
            "X-Api-Key": settings.GETSTREAM_API_KEY,
        },
    }

    finix_auth = None
    if settings.FINIX_WEBHOOK_USERNAME and settings.FINIX_WEBHOOK_PASSWORD:
        finix_auth = (settings.FINIX_WEBHOOK_USERNAME, settings.FINIX_WEBHOOK_PASSWORD)

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp, 200)

        for provider, headers in signed.items():
            url = f"{base_url}/webhooks/{provider}"
            logger.info("Posting signed ping", extra_data={"url": url})
            resp = client.post(
                url,
                content=PING_BODY,
                headers=headers,
                auth=finix_auth if provider == "finix" else None,
            )
            _check_status(resp, 200)
            if resp.json() != {"ok": True, "ping": True}:
                raise RuntimeError(f"{provider} ping not acknowledged: {resp.text[:500]}")

        url = f"{base_url}/webhooks/finix"
        logger.info("Posting unsigned body", extra_data={"url": url})
        resp = client.post(url, content=b'{"id": "smoke"}', auth=finix_auth)
        _check_status(resp, 401)

    logger.info("Smoke checks completed successfully")


if __name__ == "__main__":
    main()
