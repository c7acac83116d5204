"""Identity API interfaces (ports) for resolving authors and sizing repositories.

This is the anti-corruption layer that shields the domain from GitHub API specifics.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from commitboard.domain.models import Identity, RateLimitState


@dataclass(frozen=True)
class IdentityLookup:
    """Successful lookup plus the rate limit metadata of the response."""
    identity: Identity
    rate_limit: Optional[RateLimitState] = None


@dataclass(frozen=True)
class ReportedSize:
    """Repository size as reported by the source host."""
    size_bytes: Optional[int]
    rate_limit: Optional[RateLimitState] = None


class IIdentityClient(ABC):
    """Abstract interface for resolving an author email to an external identity."""

    @abstractmethod
    async def lookup(self, email: str, token: str) -> IdentityLookup:
        """Resolve an author email.

        Args:
            email: Normalized author email
            token: Credential used for the call

        Returns:
            IdentityLookup with the matched identity

        Raises:
            ExternalApiNotFound: No identity matches the email
            ExternalApiTransient: The call failed and may be retried
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass


class IRepositorySizeClient(ABC):
    """Abstract interface for the cheap, API-based repository size check."""

    @abstractmethod
    async def reported_size(self, url: str, token: str) -> ReportedSize:
        """Size of a repository as reported by its host.

        ``size_bytes`` is None when the host cannot report it.
        """
        pass
