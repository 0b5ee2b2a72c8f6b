"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Identity:
    """A registered caller as reported by the hosted identity provider."""

    user_id: str
    tier: str = "registered"
    email: Optional[str] = None

    @property
    def is_premium(self) -> bool:
        return self.tier == "premium"


@dataclass(frozen=True)
class RequestContext:
    client_ip: str
    identity: Optional[Identity] = None

    @property
    def is_registered(self) -> bool:
        return self.identity is not None

    @property
    def user_type(self) -> str:
        return "registered" if self.identity else "unregistered"

    @property
    def user_tier(self) -> str:
        if self.identity is None:
            return "unregistered"
        return "premium" if self.identity.is_premium else "registered"

    @property
    def usage_key(self) -> str:
        """Identity used for quota accounting: account id or client address."""
        return self.identity.user_id if self.identity else self.client_ip


__all__ = [
    "Identity",
    "RequestContext",
]
