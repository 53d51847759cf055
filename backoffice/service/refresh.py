"""Refresh-token rotation with reuse detection.

Every refresh token is single use. Presenting a token rotates it: the stored
record is revoked, linked to the hash of its replacement, and the replacement
is stored, all in one atomic store call. Presenting a token whose record is
already revoked or expired is treated as replay of a stolen token: every
unrevoked token of that user is revoked in one atomic update and the call
fails with ``TokenReuseDetectedError``.

Storage failures during either write surface as ``ServerError``; the store
leaves no partial state behind.

A rotation that loses a race (another request rotated or swept the same
token between lookup and write) takes the reuse path as well, so at most one
of several concurrent presentations of a token can succeed.
"""

from __future__ import annotations

from typing import NoReturn, Optional

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.service.auth import AuthResult, AuthStore
from backoffice.service.clock import Clock, SystemClock
from backoffice.service.context import RequestContext
from backoffice.service.errors import (
    AccountDisabledError,
    InvalidTokenError,
    ServerError,
    TokenReuseDetectedError,
)
from backoffice.service.permissions import resolve_effective_permissions
from backoffice.service.tokens import TokenIssuer

logger = get_logger(__name__)


class RefreshOrchestrator:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.store = store
        self.clock: Clock = clock or SystemClock()
        self.issuer = issuer or TokenIssuer(settings)

    def refresh(self, raw_refresh_token: str, ctx: RequestContext) -> AuthResult:
        if not raw_refresh_token:
            raise InvalidTokenError()
        token_hash = self.issuer.hash_refresh_token(raw_refresh_token)
        record = self.store.get_refresh_token(token_hash)
        if record is None:
            logger.info("refresh_token_unknown", correlation_id=ctx.correlation_id)
            raise InvalidTokenError()

        now = self.clock.now()
        if not record.is_active(now):
            self._reject_reuse(
                record.user_id,
                ctx,
                reason="revoked" if record.is_revoked else "expired",
            )

        snapshot = self.store.load_access_snapshot(record.user_id)
        if snapshot is None:
            raise InvalidTokenError()
        if not snapshot.user.is_active:
            logger.info(
                "refresh_rejected_inactive",
                user_id=record.user_id,
                correlation_id=ctx.correlation_id,
            )
            raise AccountDisabledError()

        permissions = resolve_effective_permissions(snapshot)
        tokens = self.issuer.issue(snapshot.user, permissions, now)
        new_record = self.issuer.refresh_record(record.user_id, tokens.refresh_token, now)
        try:
            rotated = self.store.rotate_refresh_token(token_hash, new_record, now)
        except Exception as exc:
            logger.error(
                "refresh_token_rotation_failed",
                user_id=record.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
                correlation_id=ctx.correlation_id,
            )
            raise ServerError("Refresh token rotation failed") from exc
        if not rotated:
            self._reject_reuse(record.user_id, ctx, reason="rotation_race")

        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            permission_count=len(permissions),
            correlation_id=ctx.correlation_id,
        )
        return AuthResult.from_tokens(tokens)

    def _reject_reuse(self, user_id: str, ctx: RequestContext, *, reason: str) -> NoReturn:
        try:
            revoked = self.store.revoke_user_refresh_tokens(user_id, self.clock.now())
        except Exception as exc:
            logger.error(
                "refresh_token_revocation_failed",
                user_id=user_id,
                reason=reason,
                error_type=type(exc).__name__,
                error=str(exc),
                correlation_id=ctx.correlation_id,
            )
            raise ServerError("Refresh token revocation failed") from exc
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=user_id,
            reason=reason,
            revoked_count=revoked,
            correlation_id=ctx.correlation_id,
            client_ip=ctx.client_ip,
        )
        raise TokenReuseDetectedError()


__all__ = ["RefreshOrchestrator"]
