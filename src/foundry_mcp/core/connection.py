"""
ServiceNow connection management for Foundry MCP.

Owns the registry of live sessions keyed by normalized instance URL and
tracks which one is active.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .auth import AuthConfig, AuthParams, AuthType, CredentialResolver
from .client import (
    RetryPolicy,
    ServiceNowClient,
    normalize_instance_url,
    validate_instance_url,
)
from .errors import ErrorKind, ServiceNowError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, AuthConfig], ServiceNowClient]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConnectionSession:
    """A live connection to one instance."""

    instance_url: str
    auth_type: AuthType
    user_id: str
    user_name: str
    roles: list[str]
    instance_version: str
    client: ServiceNowClient = field(repr=False, compare=False)
    created_at: datetime = field(default_factory=_utcnow)
    last_used: datetime = field(default_factory=_utcnow)

    @property
    def auth_config(self) -> AuthConfig:
        """The client's current auth, including any refreshed OAuth token."""
        return self.client.auth

    def touch(self) -> None:
        self.last_used = _utcnow()


@dataclass
class ConnectionResult:
    """Outcome of a connect() call."""

    success: bool
    message: str
    session: dict[str, Any] | None = None
    error: ServiceNowError | None = None


class ConnectionManager:
    """Registry of ServiceNow sessions.

    Sessions are keyed by normalize_instance_url(), so "DEV.service-now.com",
    "https://dev.service-now.com/" and "dev.service-now.com" share one entry.
    Registry writes are serialized by an asyncio lock. The active session is
    a single pointer: when connects to different hosts race, the last one
    to finish becomes active.
    """

    def __init__(
        self,
        resolver: CredentialResolver | None = None,
        client_factory: ClientFactory | None = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        script_poll_delay: float = 2.0,
    ):
        """Initialize the connection manager.

        Args:
            resolver: Credential resolver for explicit and profile auth.
            client_factory: Builds a client for (instance, auth). Defaults
                to ServiceNowClient with the given transport settings.
            timeout: Default per-request timeout for new clients.
            retry_policy: Backoff settings for new clients.
            script_poll_delay: Script output poll delay for new clients.
        """
        self.resolver = resolver or CredentialResolver()
        self._client_factory = client_factory
        self._timeout = timeout
        self._retry_policy = retry_policy
        self._script_poll_delay = script_poll_delay

        self._sessions: dict[str, ConnectionSession] = {}
        self._clients: dict[str, ServiceNowClient] = {}
        self._active_key: str | None = None
        self._lock = asyncio.Lock()

    @staticmethod
    def session_key(instance: str) -> str:
        """Registry key for an instance; the normalized URL."""
        return normalize_instance_url(instance)

    def _create_client(self, instance: str, auth: AuthConfig) -> ServiceNowClient:
        if self._client_factory is not None:
            return self._client_factory(instance, auth)
        return ServiceNowClient(
            instance,
            auth,
            timeout=self._timeout,
            retry_policy=self._retry_policy,
            script_poll_delay=self._script_poll_delay,
        )

    async def connect(self, params: AuthParams) -> ConnectionResult:
        """Connect to an instance and make it the active session.

        Resolves credentials, verifies connectivity and fetches the user's
        identity and roles. On success the session replaces any existing
        one for the same host. On failure nothing is stored.

        Args:
            params: Instance and credential parameters.

        Returns:
            ConnectionResult; failures carry a typed error.
        """
        if not params.instance and not params.uses_profile:
            return ConnectionResult(
                success=False,
                message="Instance URL is required",
                error=ServiceNowError(
                    ErrorKind.INVALID_INSTANCE,
                    "Instance URL is required",
                    suggestion='Provide the instance URL (e.g., "dev12345.service-now.com")',
                ),
            )

        client: ServiceNowClient | None = None
        try:
            instance, auth = self.resolver.resolve_target(params)
            if not instance or not instance.strip():
                raise ServiceNowError(
                    ErrorKind.INVALID_INSTANCE,
                    "Instance URL is required",
                    suggestion="Set 'instance' on the profile or pass it explicitly",
                )

            client = self._create_client(validate_instance_url(instance), auth)
            if client.needs_token:
                await client.authenticate()

            instance_info = await client.test_connection()
            user_info = await client.get_current_user()
        except ServiceNowError as e:
            logger.warning(f"Connection to {params.instance or params.profile} failed: {e.message}")
            if client is not None:
                await client.close()
            return ConnectionResult(success=False, message=e.message, error=e)

        session = ConnectionSession(
            instance_url=client.instance_url,
            auth_type=client.auth.type,
            user_id=user_info.sys_id,
            user_name=user_info.user_name,
            roles=list(user_info.roles),
            instance_version=instance_info.version,
            client=client,
        )
        key = self.session_key(client.instance_url)

        async with self._lock:
            previous = self._clients.get(key)
            self._sessions[key] = session
            self._clients[key] = client
            self._active_key = key

        if previous is not None and previous is not client:
            await previous.close()

        logger.info(
            f"Connected to {session.instance_url} as {session.user_name} "
            f"({session.instance_version})"
        )
        return ConnectionResult(
            success=True,
            message=f"Connected to {session.instance_url}",
            session={
                "instance_url": session.instance_url,
                "instance_version": session.instance_version,
                "user": session.user_name,
                "roles": list(session.roles),
            },
        )

    async def disconnect(self, instance: str | None = None) -> bool:
        """Remove the session for an instance, or the active one.

        If the active session is removed, another remaining session (if any)
        becomes active.

        Returns:
            True if a session was removed, False if there was nothing to
            disconnect.
        """
        async with self._lock:
            key = self.session_key(instance) if instance else self._active_key
            if key is None or key not in self._sessions:
                return False

            del self._sessions[key]
            client = self._clients.pop(key, None)

            if self._active_key == key:
                self._active_key = next(iter(self._sessions), None)

        if client is not None:
            await client.close()
        logger.info(f"Disconnected from {key}")
        return True

    def get_active_client(self) -> ServiceNowClient | None:
        """Get the active session's client, or None if not connected."""
        if self._active_key is None:
            return None
        return self._clients.get(self._active_key)

    def get_client(self, instance: str) -> ServiceNowClient | None:
        """Get the client for a specific instance, or None if not connected."""
        return self._clients.get(self.session_key(instance))

    def resolve_client(self, instance: str | None = None) -> ServiceNowClient | None:
        """Get the named instance's client, or the active one."""
        return self.get_client(instance) if instance else self.get_active_client()

    def get_active_session(self) -> ConnectionSession | None:
        if self._active_key is None:
            return None
        return self._sessions.get(self._active_key)

    def get_session(self, instance: str | None = None) -> ConnectionSession | None:
        """Get the named instance's session, or the active one."""
        if instance is None:
            return self.get_active_session()
        return self._sessions.get(self.session_key(instance))

    def list_sessions(self) -> list[ConnectionSession]:
        return list(self._sessions.values())

    def is_connected(self) -> bool:
        return self._active_key is not None and self._active_key in self._clients

    def touch(self, instance: str | None = None) -> None:
        """Update last_used on the named (or active) session."""
        session = self.get_session(instance)
        if session is not None:
            session.touch()

    def get_status(self) -> dict[str, Any]:
        """Summarize connection state. Never raises."""
        session = self.get_active_session()
        return {
            "connected": self.is_connected(),
            "active_instance": session.instance_url if session else None,
            "user": session.user_name if session else None,
            "version": session.instance_version if session else None,
            "session_count": len(self._sessions),
        }

    async def close_all(self) -> None:
        """Close every session's HTTP client and clear the registry."""
        async with self._lock:
            clients = list(self._clients.values())
            self._sessions.clear()
            self._clients.clear()
            self._active_key = None

        for client in clients:
            await client.close()
