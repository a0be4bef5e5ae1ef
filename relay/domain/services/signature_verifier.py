"""
Webhook signature verification.

The intake guard only depends on the ``SignatureVerifier`` protocol, so a
provider with its own scheme can plug in a different verifier.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Protocol

from relay.core.config import settings
from relay.core.logging import get_logger

logger = get_logger(__name__)

_SHA256_PREFIX = "sha256="


def raw_payload_bytes(payload: bytes | str | dict[str, Any] | list[Any]) -> bytes:
    """Bytes a signature and payload hash are computed over.

    Raw bodies are used as received. Already-parsed JSON is serialised
    canonically (sorted keys, compact separators).
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class SignatureVerifier(Protocol):
    def verify(self, provider: str, signature: str, raw_payload: bytes) -> bool:
        ...


class HmacSignatureVerifier:
    """HMAC-SHA256 over the raw body, hex encoded, optionally prefixed ``sha256=``."""

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = {
            name.lower(): secret
            for name, secret in (secrets if secrets is not None else settings.provider_secrets()).items()
        }

    def sign(self, provider: str, raw_payload: bytes) -> str:
        secret = self._secrets.get(provider.lower())
        if secret is None:
            raise KeyError(provider)
        digest = hmac.new(secret.encode(), raw_payload, hashlib.sha256).hexdigest()
        return f"{_SHA256_PREFIX}{digest}"

    def verify(self, provider: str, signature: str, raw_payload: bytes) -> bool:
        secret = self._secrets.get(provider.lower())
        if secret is None:
            logger.warning(
                "No webhook secret configured for provider",
                extra_data={"provider": provider}
            )
            return False
        if not signature:
            return False

        received = signature.strip()
        if received.startswith(_SHA256_PREFIX):
            received = received[len(_SHA256_PREFIX):]

        expected = hmac.new(secret.encode(), raw_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(received.lower().encode(), expected.encode())
