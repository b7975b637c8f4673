from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from archauth.config import Settings
from archauth.logging import get_logger
from archauth.service.errors import TokenExpired, TokenInvalid

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
OAUTH_SESSION_TOKEN_TYPE = "oauth_session"

_RANDOM_TOKEN_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    issued_at: Optional[int] = field(default=None, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    session_id: str
    issued_at: Optional[int] = field(default=None, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HS256Signer:
    """Compact HS256 JWS bound to one secret, issuer, audience and token type."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        token_type: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError(f"signing secret for {token_type} tokens is not configured")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.token_type = token_type
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = int(self._clock())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "token_type": self.token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> dict[str, Any]:
        """Verify ``token`` and return its payload.

        Raises TokenInvalid for anything structurally wrong or signed with a
        different key, and TokenExpired only once the signature has been
        accepted. Issuer, audience and token type are checked before expiry.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed", token_type=self.token_type)
            raise TokenInvalid("malformed") from None
        if not isinstance(header, dict):
            raise TokenInvalid("malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # compare_digest refuses non-ASCII str operands, so compare bytes
        received = sig_b64.encode("utf-8", "replace")
        if not hmac.compare_digest(expected_sig.encode("ascii"), received):
            raise TokenInvalid("signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed")

        if payload.get("iss") != self.issuer:
            raise TokenInvalid("issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalid("audience")
        if payload.get("token_type") != self.token_type:
            raise TokenInvalid("token_type")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("exp") from None
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpired("expired")
        return payload


class TokenCodec:
    """Signs and verifies the access/refresh token pair.

    Access and refresh tokens use different secrets, so holding the access
    key does not allow forging refresh tokens.
    """

    def __init__(
        self,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        *,
        issuer: str = "architecture.lk",
        audience: str = "architecture.lk",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret and access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._access = HS256Signer(
            access_secret,
            issuer=issuer,
            audience=audience,
            token_type=ACCESS_TOKEN_TYPE,
            leeway_seconds=leeway_seconds,
            clock=clock,
        )
        self._refresh = HS256Signer(
            refresh_secret,
            issuer=issuer,
            audience=audience,
            token_type=REFRESH_TOKEN_TYPE,
            leeway_seconds=leeway_seconds,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            leeway_seconds=settings.jwt_clock_skew_leeway_seconds,
            **kwargs,
        )

    def sign_access_token(self, user_id: str, email: str, role: str) -> str:
        return self._access.encode(
            {"userId": user_id, "email": email, "role": role}, self.access_ttl
        )

    def sign_refresh_token(self, user_id: str, session_id: str) -> str:
        return self._refresh.encode(
            {"userId": user_id, "sessionId": session_id}, self.refresh_ttl
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._access.decode(token)
        user_id, email, role = payload.get("userId"), payload.get("email"), payload.get("role")
        if not isinstance(user_id, str) or not isinstance(email, str) or not isinstance(role, str):
            raise TokenInvalid("claims")
        return AccessClaims(
            user_id=user_id,
            email=email,
            role=role,
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
        )

    def verify_refresh_token(self, token: str) -> RefreshClaims:
        payload = self._refresh.decode(token)
        user_id, session_id = payload.get("userId"), payload.get("sessionId")
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            raise TokenInvalid("claims")
        return RefreshClaims(
            user_id=user_id,
            session_id=session_id,
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
        )


def generate_random_token(length: int = 32) -> str:
    """Opaque alphanumeric token for single-use verification/reset links."""
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(_RANDOM_TOKEN_ALPHABET) for _ in range(length))


def generate_uuid_token() -> str:
    return str(uuid.uuid4())


def hash_token(token: str) -> str:
    """Deterministic digest used to store and look up refresh tokens at rest."""
    return hashlib.sha256(token.encode()).hexdigest()


def decode_unverified(token: str) -> Optional[dict[str, Any]]:
    """Read a token's payload without checking its signature.

    For diagnostics only; never use the result for an authorization decision.
    """
    try:
        _header, payload_b64, _sig = token.split(".")
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, binascii.Error, AttributeError):
        return None
    return payload if isinstance(payload, dict) else None


def is_token_expired(token: str, *, now: Optional[float] = None) -> bool:
    """True when the token is unreadable or its ``exp`` has passed."""
    payload = decode_unverified(token)
    if not payload:
        return True
    try:
        exp_ts = float(payload["exp"])
    except (KeyError, TypeError, ValueError):
        return True
    return exp_ts <= (time.time() if now is None else now)
