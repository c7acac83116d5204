"""GitHub GraphQL API client for identity lookups and repository size checks."""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

import aiohttp
from gql import gql, Client
from gql.client import AsyncClientSession
from gql.transport.aiohttp import AIOHTTPTransport
from gql.transport.exceptions import TransportError, TransportQueryError, TransportServerError

from commitboard.domain.errors import ExternalApiNotFound, ExternalApiTransient
from commitboard.domain.identity_interface import (
    IdentityLookup,
    IIdentityClient,
    IRepositorySizeClient,
    ReportedSize,
)
from commitboard.domain.models import Identity, RateLimitState
from commitboard.domain.rate_limit import credential_key
from commitboard.domain.urls import split_owner_name


logger = logging.getLogger(__name__)

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"


def parse_rate_limit(data: Optional[dict], token: str) -> Optional[RateLimitState]:
    """Build a RateLimitState from the ``rateLimit`` block of a response."""
    rate_limit = (data or {}).get("rateLimit")
    if not rate_limit:
        return None
    reset_at_str = rate_limit.get("resetAt")
    reset_at = None
    if reset_at_str:
        reset_at = datetime.fromisoformat(reset_at_str.replace("Z", "+00:00"))
    return RateLimitState(
        key=credential_key(token),
        remaining=int(rate_limit.get("remaining", 0)),
        reset_at=reset_at,
        limit=int(rate_limit.get("limit", 0)),
    )


def parse_identity(data: dict) -> Optional[Identity]:
    """First user node of a user search, if any."""
    nodes = (data.get("search") or {}).get("nodes") or []
    for node in nodes:
        login = (node or {}).get("login")
        if login:
            return Identity(username=login, profile_url=node.get("url") or f"https://github.com/{login}")
    return None


class GitHubGraphQLClient(IIdentityClient, IRepositorySizeClient):
    """GitHub GraphQL API client.

    Implements the identity and size-check ports, providing an
    anti-corruption layer between the domain and GitHub's API. Every
    response carries its ``rateLimit`` block back to the caller so the
    shared coordinator can track the budget.
    """

    USER_SEARCH_QUERY = gql("""
        query SearchUserByEmail($query: String!) {
            search(query: $query, type: USER, first: 1) {
                nodes {
                    ... on User {
                        login
                        url
                    }
                }
            }
            rateLimit {
                limit
                remaining
                resetAt
            }
        }
    """)

    REPOSITORY_SIZE_QUERY = gql("""
        query RepositorySize($owner: String!, $name: String!) {
            repository(owner: $owner, name: $name) {
                diskUsage
            }
            rateLimit {
                limit
                remaining
                resetAt
            }
        }
    """)

    def __init__(self, timeout_seconds: int = 30):
        """Initialize GitHub client.

        Args:
            timeout_seconds: Per-request timeout
        """
        self._timeout = timeout_seconds
        self._clients: Dict[str, Client] = {}
        self._sessions: Dict[str, AsyncClientSession] = {}
        self._connect_lock: Optional[asyncio.Lock] = None

    def _client_for(self, token: str) -> Client:
        """GraphQL client with its own transport for one credential."""
        transport = AIOHTTPTransport(
            url=GITHUB_GRAPHQL_URL,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._timeout
        )
        return Client(
            transport=transport,
            fetch_schema_from_transport=False,
            execute_timeout=self._timeout
        )

    async def _session_for(self, token: str) -> AsyncClientSession:
        """Session per credential, opened once and shared by concurrent queries until close()."""
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        key = credential_key(token)
        async with self._connect_lock:
            if key not in self._sessions:
                client = self._client_for(token)
                self._sessions[key] = await client.connect_async(reconnecting=False)
                self._clients[key] = client
        return self._sessions[key]

    async def _execute(self, query, variables: dict, token: str) -> dict:
        """Execute a GraphQL query, translating transport failures.

        Raises:
            ExternalApiTransient: Network errors, timeouts, 5xx and rate limit errors
        """
        try:
            session = await self._session_for(token)
            return await session.execute(query, variable_values=variables)
        except TransportQueryError as e:
            rate_limit = parse_rate_limit(e.data, token)
            message = str(e)
            if "rate limit" in message.lower():
                raise ExternalApiTransient(f"GitHub rate limit hit: {message}", rate_limit) from e
            if "NOT_FOUND" in message or "Could not resolve" in message:
                raise ExternalApiNotFound(message, rate_limit) from e
            raise ExternalApiTransient(message, rate_limit) from e
        except (TransportServerError, TransportError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error executing GraphQL query: {e}")
            raise ExternalApiTransient(str(e) or e.__class__.__name__) from e

    async def lookup(self, email: str, token: str) -> IdentityLookup:
        """Search for the GitHub user whose public email matches ``email``."""
        result = await self._execute(self.USER_SEARCH_QUERY, {"query": f"{email} in:email"}, token)
        rate_limit = parse_rate_limit(result, token)
        identity = parse_identity(result)
        if identity is None:
            raise ExternalApiNotFound(f"No GitHub user with email {email}", rate_limit)
        logger.debug(f"Resolved {email} to {identity.username}")
        return IdentityLookup(identity=identity, rate_limit=rate_limit)

    async def reported_size(self, url: str, token: str) -> ReportedSize:
        """Repository size from ``diskUsage`` (kilobytes), or None if unavailable."""
        owner, name = split_owner_name(url)
        try:
            result = await self._execute(
                self.REPOSITORY_SIZE_QUERY, {"owner": owner, "name": name}, token
            )
        except (ExternalApiTransient, ExternalApiNotFound) as e:
            logger.warning(f"Size check unavailable for {owner}/{name}: {e}")
            return ReportedSize(size_bytes=None, rate_limit=e.rate_limit)

        rate_limit = parse_rate_limit(result, token)
        disk_usage = (result.get("repository") or {}).get("diskUsage")
        if disk_usage is None:
            return ReportedSize(size_bytes=None, rate_limit=rate_limit)
        return ReportedSize(size_bytes=int(disk_usage) * 1024, rate_limit=rate_limit)

    async def close(self) -> None:
        """Close the GraphQL sessions and their transports."""
        for client in self._clients.values():
            await client.close_async()
        self._clients = {}
        self._sessions = {}
