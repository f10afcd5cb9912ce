"""
Webhook signature verification.

Both providers sign the raw request body with HMAC-SHA256 and send the hex
digest in a header. Verification always runs on the exact bytes received,
before any JSON parsing.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Mapping

from app.core.exceptions import WebhookAuthenticationError
from app.core.logging import get_logger

logger = get_logger(__name__)

_SHA256_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``raw_body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_hmac_sha256(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    """
    Constant-time check of a hex HMAC-SHA256 signature.

    Never raises: a missing, empty or malformed header returns False.
    An optional ``sha256=`` prefix is accepted.
    """
    if not signature_header or not secret:
        return False

    provided = signature_header.strip()
    if provided.lower().startswith(_SHA256_PREFIX):
        provided = provided[len(_SHA256_PREFIX):]

    expected = compute_signature(raw_body, secret)
    # bytes comparison: compare_digest rejects non-ASCII str input with TypeError
    return hmac.compare_digest(
        provided.lower().encode("utf-8", errors="replace"),
        expected.encode("ascii"),
    )


def verify_basic_auth(authorization_header: str | None, username: str, password: str) -> bool:
    """Check ``Authorization: Basic ...`` against configured credentials."""
    if not authorization_header:
        return False
    scheme, _, encoded = authorization_header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return False
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False

    supplied_user, sep, supplied_password = decoded.partition(":")
    if not sep:
        return False
    user_ok = hmac.compare_digest(supplied_user.encode("utf-8"), username.encode("utf-8"))
    password_ok = hmac.compare_digest(supplied_password.encode("utf-8"), password.encode("utf-8"))
    return user_ok and password_ok


class SignatureVerifier:
    """
    Per-provider authenticity check.

    Args:
        provider: provider name, for logs and errors
        secret: HMAC key; empty means "not configured"
        signature_header: lower-cased header carrying the hex digest
        allow_unsigned: skip verification when no secret is configured
            (development only, wired to ``DEBUG``)
        basic_auth: optional (username, password) also required on every request
    """

    def __init__(
        self,
        provider: str,
        secret: str,
        signature_header: str,
        *,
        allow_unsigned: bool = False,
        basic_auth: tuple[str, str] | None = None,
    ) -> None:
        self.provider = provider
        self._secret = secret
        self._signature_header = signature_header.lower()
        self._allow_unsigned = allow_unsigned
        self._basic_auth = basic_auth

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """
        Raise WebhookAuthenticationError unless the request is authentic.

        ``headers`` must have lower-cased keys.
        """
        if self._basic_auth is not None:
            username, password = self._basic_auth
            if not verify_basic_auth(headers.get("authorization"), username, password):
                logger.warning(
                    "Webhook basic auth failed",
                    extra_data={"provider": self.provider},
                )
                raise WebhookAuthenticationError(self.provider, "invalid credentials")

        if not self._secret:
            if self._allow_unsigned:
                logger.warning(
                    "Webhook secret not configured, skipping signature check",
                    extra_data={"provider": self.provider},
                )
                return
            logger.error(
                "Webhook secret not configured, rejecting delivery",
                extra_data={"provider": self.provider},
            )
            raise WebhookAuthenticationError(self.provider, "webhook secret not configured")

        signature = headers.get(self._signature_header)
        if not signature:
            logger.warning(
                "Webhook signature header missing",
                extra_data={"provider": self.provider, "header": self._signature_header},
            )
            raise WebhookAuthenticationError(self.provider, "missing signature")

        if not verify_hmac_sha256(raw_body, signature, self._secret):
            logger.warning(
                "Webhook signature mismatch",
                extra_data={"provider": self.provider},
            )
            raise WebhookAuthenticationError(self.provider, "invalid signature")
