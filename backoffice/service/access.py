"""Per-request authorization against access-token claims.

Policies are resolved in two tiers. A policy string containing the
namespace separator (``"users.read"``) is a permission code and is allowed
only when the caller's token carries exactly that code. Any other string
names one of a small set of structural policies. New permission codes work
without registering anything here.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from backoffice.logging import get_logger
from backoffice.service.tokens import AccessClaims

logger = get_logger(__name__)

PERMISSION_SEPARATOR = "."

PolicyCheck = Callable[[AccessClaims], bool]


class AccessDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


def is_permission_code(policy: str) -> bool:
    return PERMISSION_SEPARATOR in policy


def _authenticated(claims: AccessClaims) -> bool:
    return bool(claims.subject)


DEFAULT_NAMED_POLICIES: Dict[str, PolicyCheck] = {
    "authenticated": _authenticated,
}


class AccessControlGate:
    def __init__(self, named_policies: Optional[Mapping[str, PolicyCheck]] = None) -> None:
        self._named: Dict[str, PolicyCheck] = dict(
            DEFAULT_NAMED_POLICIES if named_policies is None else named_policies
        )

    def resolve(self, policy: str) -> PolicyCheck:
        """Return the check for ``policy``; unknown named policies raise ``KeyError``."""

        if is_permission_code(policy):
            return lambda claims: claims.has_permission(policy)
        try:
            return self._named[policy]
        except KeyError:
            raise KeyError(f"unknown authorization policy '{policy}'") from None

    def authorize(self, claims: Optional[AccessClaims], policy: str) -> AccessDecision:
        check = self.resolve(policy)
        if claims is None or not check(claims):
            logger.info(
                "access_denied",
                policy=policy,
                user_id=claims.subject if claims else None,
            )
            return AccessDecision.DENY
        return AccessDecision.ALLOW


__all__ = [
    "AccessControlGate",
    "AccessDecision",
    "DEFAULT_NAMED_POLICIES",
    "PERMISSION_SEPARATOR",
    "is_permission_code",
]
