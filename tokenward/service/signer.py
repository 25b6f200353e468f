from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional

from tokenward.logging import get_logger

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenSigner:
    """Issues and verifies compact HS256 JWTs under one process-wide key.

    The signer holds no mutable state after construction, so a single instance
    is shared by every request without locking. ``verify`` never raises for bad
    input: anything that does not check out is simply reported invalid.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def issue(
        self,
        subject: str,
        ttl: timedelta,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        if not subject or not subject.strip():
            raise ValueError("subject is required")
        ttl_seconds = int(ttl.total_seconds())
        if ttl_seconds <= 0:
            raise ValueError("ttl must be positive")
        now = int(self._clock())
        payload: dict[str, Any] = dict(claims or {})
        payload.update(
            {
                "sub": subject,
                "iat": now,
                "exp": now + ttl_seconds,
                "iss": self.issuer,
                "aud": self.audience,
                "jti": str(uuid.uuid4()),
            }
        )
        return self._encode(payload)

    def verify(self, value: str, expected_subject: str) -> tuple[bool, dict[str, Any]]:
        payload = self.decode(value)
        if payload is None:
            return False, {}
        if not expected_subject or payload.get("sub") != expected_subject:
            return False, {}
        return True, payload

    def decode(self, value: str) -> Optional[dict[str, Any]]:
        """Return the claims of a well-signed, unexpired token, else ``None``."""
        if not isinstance(value, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = value.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        # Reject alg confusion before looking at the signature
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "replace")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError):
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            if self.audience not in aud:
                return None
        elif aud != self.audience:
            return None
        try:
            exp = float(payload["exp"])
            iat = float(payload.get("iat", exp - 1))
        except (KeyError, TypeError, ValueError, OverflowError):
            return None
        # NaN compares false against everything and would never expire
        if not (math.isfinite(exp) and math.isfinite(iat)) or exp <= iat:
            return None
        if exp <= self._clock() - self.leeway_seconds:
            return None
        return payload

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
