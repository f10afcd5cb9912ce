"""
Shared test values and request signing helpers
"""
import json
from typing import Any

from app.webhooks.verification import compute_signature

FINIX_SECRET = "test-finix-secret"
STREAM_KEY = "test-stream-key"
STREAM_SECRET = "test-stream-secret"
ADMIN_KEY = "test-admin-key"


def sign_finix(body: bytes) -> dict[str, str]:
    return {"Finix-Signature": compute_signature(body, FINIX_SECRET), "Content-Type": "application/json"}


def sign_getstream(body: bytes, webhook_id: str | None = None) -> dict[str, str]:
    headers = {"X-Signature": compute_signature(body, STREAM_SECRET), "Content-Type": "application/json"}
    if webhook_id:
        headers["X-Webhook-Id"] = webhook_id
    return headers


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")
