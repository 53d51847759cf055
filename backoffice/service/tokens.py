from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, FrozenSet, Iterable, Optional

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.service.errors import InvalidTokenError
from backoffice.storage.models import RefreshTokenRecord, User

logger = get_logger(__name__)

PERMISSION_CLAIM = "permission"
_REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    username: Optional[str]
    email: Optional[str]
    token_id: Optional[str]
    permissions: FrozenSet[str]
    expires_at: datetime

    def has_permission(self, code: str) -> bool:
        return code in self.permissions


def hash_refresh_token(raw_token: str) -> str:
    """Deterministic storage key for a refresh token (base64 SHA-256)."""

    digest = hashlib.sha256(raw_token.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def issue(self, user: User, permissions: Iterable[str], now: datetime) -> IssuedTokens:
        # JWT times are whole seconds
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + self.access_token_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "unique_name": user.username,
            "email": user.email,
            "jti": str(uuid.uuid4()),
            PERMISSION_CLAIM: list(permissions),
            "iat": int(issued_at.timestamp()),
            "nbf": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedTokens(
            access_token=self._encode_jwt(payload),
            refresh_token=self.generate_refresh_token(),
            access_token_expires_at=expires_at,
        )

    def generate_refresh_token(self) -> str:
        return base64.b64encode(secrets.token_bytes(_REFRESH_TOKEN_BYTES)).decode("ascii")

    def hash_refresh_token(self, raw_token: str) -> str:
        return hash_refresh_token(raw_token)

    def refresh_record(self, user_id: str, raw_token: str, now: datetime) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=hash_refresh_token(raw_token),
            expires_at=now + self.refresh_token_ttl,
            created_at=now,
        )

    def decode_access_token(self, token: str, now: datetime) -> AccessClaims:
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError("Invalid access token")
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError("Invalid access token")
        if exp_ts <= now.timestamp():
            raise InvalidTokenError("Access token expired")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("Invalid access token")
        raw_permissions = payload.get(PERMISSION_CLAIM) or []
        # a single claim may arrive as a bare string from other issuers
        if isinstance(raw_permissions, str):
            raw_permissions = [raw_permissions]
        return AccessClaims(
            subject=subject,
            username=payload.get("unique_name"),
            email=payload.get("email"),
            token_id=payload.get("jti"),
            permissions=frozenset(str(code) for code in raw_permissions),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload


__all__ = [
    "AccessClaims",
    "IssuedTokens",
    "PERMISSION_CLAIM",
    "TokenIssuer",
    "hash_refresh_token",
]
