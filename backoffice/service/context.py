from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional


@dataclass(frozen=True)
class RequestContext:
    """Per-request values handed explicitly to every service call.

    ``user_id`` and ``permissions`` are empty for anonymous calls such as
    login and refresh.
    """

    correlation_id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    client_ip: Optional[str] = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def actor(self) -> str:
        return self.username or "anonymous"

    def with_principal(
        self, user_id: str, username: str, permissions: FrozenSet[str]
    ) -> "RequestContext":
        return RequestContext(
            correlation_id=self.correlation_id,
            user_id=user_id,
            username=username,
            client_ip=self.client_ip,
            permissions=permissions,
        )
