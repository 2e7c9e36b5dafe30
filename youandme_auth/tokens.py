"""HS256 access tokens shared by the server and the client library.

The server signs and verifies; the client only peeks at ``exp`` to avoid
sending requests that are bound to fail.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from youandme_auth.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenDecodeError(Exception):
    """Token failed verification. ``expired`` separates expiry from tampering."""

    def __init__(self, message: str, *, expired: bool = False) -> None:
        super().__init__(message)
        self.expired = expired


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def peek_claims(token: str) -> Optional[dict[str, Any]]:
    """Decode the payload without checking the signature, or None if malformed."""
    try:
        _, payload_b64, _ = token.split(".")
        payload = json.loads(decode_segment(payload_b64))
    except (ValueError, TypeError, AttributeError):
        return None
    return payload if isinstance(payload, dict) else None


def is_expired(token: str, *, now: Optional[float] = None, skew_seconds: float = 0) -> bool:
    """True when the token's ``exp`` has passed or cannot be read."""
    claims = peek_claims(token)
    if not claims:
        return True
    try:
        exp_ts = float(claims.get("exp"))
    except (TypeError, ValueError):
        return True
    current = time.time() if now is None else now
    return exp_ts <= current + skew_seconds


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 120,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def _sign(self, signing_input: str) -> str:
        return encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self,
        token: str,
        *,
        verify_exp: bool = True,
        token_type: Optional[str] = ACCESS_TOKEN_TYPE,
    ) -> dict[str, Any]:
        """Verify signature, algorithm, issuer, audience and (optionally) expiry."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            raise TokenDecodeError("malformed token")

        # Reject alg=none and friends before touching the signature
        try:
            header = json.loads(decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenDecodeError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenDecodeError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenDecodeError("bad token signature")
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenDecodeError("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenDecodeError("malformed token payload")
        if payload.get("iss") != self.issuer:
            raise TokenDecodeError("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenDecodeError("unexpected token audience")
        if token_type and payload.get("token_type") != token_type:
            raise TokenDecodeError("unexpected token type")
        if not payload.get("jti") or not payload.get("sub"):
            raise TokenDecodeError("token is missing identity claims")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenDecodeError("token has no expiry")
        if verify_exp and exp_ts <= time.time() - self.leeway_seconds:
            raise TokenDecodeError("token expired", expired=True)
        return payload
