"""
Credential resolution for Foundry MCP.

Turns explicit connection parameters, or a named profile from the
credential store, into a concrete AuthConfig. No network access happens
here.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ErrorKind, ServiceNowError

logger = logging.getLogger(__name__)


class AuthType(str, Enum):
    """Authentication variants supported by the transport client."""

    BASIC = "basic"
    OAUTH = "oauth"
    TOKEN = "token"


def _auth_failed(message: str, suggestion: str, **details: Any) -> ServiceNowError:
    return ServiceNowError(
        ErrorKind.AUTHENTICATION_FAILED,
        message,
        details=details or None,
        suggestion=suggestion,
    )


@dataclass(frozen=True)
class BasicAuth:
    """Username and password, sent as HTTP Basic."""

    username: str
    password: str = field(repr=False)

    def __post_init__(self):
        if not self.username or not self.password:
            raise _auth_failed(
                "Basic auth requires username and password",
                "Provide username and password parameters",
            )

    @property
    def type(self) -> AuthType:
        return AuthType.BASIC


@dataclass(frozen=True)
class OAuthAuth:
    """OAuth 2.0 application credentials plus any token obtained so far."""

    client_id: str
    client_secret: str = field(repr=False)
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expiry: datetime | None = None

    def __post_init__(self):
        if not self.client_id or not self.client_secret:
            raise _auth_failed(
                "OAuth requires client_id and client_secret",
                "Provide OAuth application credentials",
            )

    @property
    def type(self) -> AuthType:
        return AuthType.OAUTH

    def with_token(
        self,
        access_token: str,
        expiry: datetime | None = None,
        refresh_token: str | None = None,
    ) -> "OAuthAuth":
        """Return a copy carrying a freshly obtained access token."""
        return replace(
            self,
            access_token=access_token,
            expiry=expiry,
            refresh_token=refresh_token or self.refresh_token,
        )


@dataclass(frozen=True)
class TokenAuth:
    """Pre-issued API token, sent as a bearer token."""

    token: str = field(repr=False)

    def __post_init__(self):
        if not self.token:
            raise _auth_failed("Token auth requires a token", "Provide the token parameter")

    @property
    def type(self) -> AuthType:
        return AuthType.TOKEN


AuthConfig = BasicAuth | OAuthAuth | TokenAuth


@dataclass
class AuthParams:
    """Connection parameters as received from a tool call.

    Either ``profile`` names an entry in the credential store (an empty
    string selects the store's default), or ``auth_type`` plus the matching
    credential fields are given explicitly.
    """

    instance: str = ""
    auth_type: str | None = None
    profile: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    token: str | None = field(default=None, repr=False)
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)

    @property
    def uses_profile(self) -> bool:
        return self.profile is not None or self.auth_type == "profile"


def build_auth_config(
    auth_type: str | AuthType | None = None,
    username: str | None = None,
    password: str | None = None,
    token: str | None = None,
    client_id: str | None = None,
    client_secret: str | None = None,
    refresh_token: str | None = None,
) -> AuthConfig:
    """Build an AuthConfig from explicit credential fields.

    Args:
        auth_type: "basic" (default), "token" or "oauth".
        username: Username for basic auth.
        password: Password for basic auth.
        token: API token for token auth.
        client_id: OAuth client ID.
        client_secret: OAuth client secret.
        refresh_token: Optional OAuth refresh token.

    Returns:
        The matching AuthConfig variant.

    Raises:
        ServiceNowError: AUTHENTICATION_FAILED if the type is unknown or a
            required field for the chosen variant is missing.
    """
    try:
        kind = AuthType(auth_type or AuthType.BASIC)
    except ValueError:
        raise _auth_failed(
            f"Unknown auth type: {auth_type}",
            "Use basic, token, oauth or a profile",
            auth_type=str(auth_type),
        ) from None

    if kind is AuthType.BASIC:
        return BasicAuth(username=username or "", password=password or "")

    if kind is AuthType.TOKEN:
        return TokenAuth(token=token or "")

    if kind is AuthType.OAUTH:
        return OAuthAuth(
            client_id=client_id or "",
            client_secret=client_secret or "",
            refresh_token=refresh_token,
        )

    raise _auth_failed(f"Unsupported auth type: {kind.value}", "Use basic, token or oauth")


@dataclass(frozen=True)
class CredentialProfile:
    """A named bundle of connection parameters from the credential store."""

    name: str
    instance: str
    type: str
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    token: str | None = field(default=None, repr=False)
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "CredentialProfile":
        """Build a profile from a store entry.

        Accepts both snake_case and the camelCase keys written by other
        ServiceNow tooling (clientId, clientSecret, refreshToken).
        """
        return cls(
            name=name,
            instance=str(data.get("instance", "")),
            type=str(data.get("type", AuthType.BASIC.value)),
            username=data.get("username"),
            password=data.get("password"),
            token=data.get("token"),
            client_id=data.get("client_id", data.get("clientId")),
            client_secret=data.get("client_secret", data.get("clientSecret")),
            refresh_token=data.get("refresh_token", data.get("refreshToken")),
        )

    def to_auth_config(self) -> AuthConfig:
        """Convert this profile into an AuthConfig.

        Raises:
            ServiceNowError: AUTHENTICATION_FAILED if the profile is
                missing fields required by its type.
        """
        try:
            return build_auth_config(
                auth_type=self.type,
                username=self.username,
                password=self.password,
                token=self.token,
                client_id=self.client_id,
                client_secret=self.client_secret,
                refresh_token=self.refresh_token,
            )
        except ServiceNowError as e:
            raise _auth_failed(
                f"Profile '{self.name}' is incomplete: {e.message}",
                f"Complete the '{self.name}' profile in the credential store",
                profile=self.name,
            ) from e


class CredentialStore:
    """Read-only view over the credential profile file.

    The file is JSON (or YAML) shaped as::

        {"profiles": {"dev": {"instance": "...", "type": "basic", ...}},
         "default": "dev"}

    It is re-read on every lookup so edits take effect without a restart.
    """

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Location of the credential profile file.
        """
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            raise _auth_failed(
                f"Credential store not found: {self.path}",
                f"Create {self.path} with a 'profiles' mapping",
            )
        try:
            text = self.path.read_text()
            if self.path.suffix.lower() == ".json" or text.lstrip().startswith("{"):
                data = json.loads(text) if text.strip() else {}
            else:
                data = yaml.safe_load(text) or {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to read credential store {self.path}: {e}")
            raise _auth_failed(
                f"Credential store could not be read: {self.path}",
                "Check that the credential file is valid JSON or YAML",
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("profiles", {}), dict):
            raise _auth_failed(
                f"Credential store is malformed: {self.path}",
                "The file must contain a 'profiles' object",
            )
        return data

    @property
    def default_profile(self) -> str | None:
        """Name of the store's default profile, if any."""
        return self._load().get("default")

    def list_profiles(self) -> list[str]:
        """List profile names in the store."""
        return sorted(self._load().get("profiles", {}))

    def get_profile(self, name: str | None = None) -> CredentialProfile:
        """Look up a profile by name.

        Args:
            name: Profile name. None or empty selects the store default.

        Returns:
            The resolved CredentialProfile.

        Raises:
            ServiceNowError: AUTHENTICATION_FAILED if no such profile exists.
        """
        data = self._load()
        profile_name = name or data.get("default")
        if not profile_name:
            raise _auth_failed(
                "No profile given and the credential store has no default",
                f"Pass a profile name or set 'default' in {self.path}",
            )

        profiles = data.get("profiles", {})
        entry = profiles.get(profile_name)
        if not isinstance(entry, dict):
            raise _auth_failed(
                f'Profile "{profile_name}" not found',
                f"Create the profile in {self.path}",
                profile=profile_name,
            )
        return CredentialProfile.from_dict(profile_name, entry)


class CredentialResolver:
    """Resolves tool parameters into an instance and an AuthConfig."""

    def __init__(self, store: CredentialStore | None = None):
        """Initialize the resolver.

        Args:
            store: Credential profile store for profile-based connections.
        """
        self.store = store

    def resolve_target(self, params: AuthParams) -> tuple[str, AuthConfig]:
        """Resolve the instance to connect to and its AuthConfig.

        A profile's own instance takes precedence over ``params.instance``.

        Raises:
            ServiceNowError: AUTHENTICATION_FAILED on missing fields or an
                unknown profile.
        """
        if params.uses_profile:
            if self.store is None:
                raise _auth_failed(
                    "Profile requested but no credential store is configured",
                    "Set FOUNDRY_CREDENTIALS_PATH or pass explicit credentials",
                )
            profile = self.store.get_profile(params.profile)
            logger.info(f"Using credential profile '{profile.name}'")
            return profile.instance or params.instance, profile.to_auth_config()

        auth = build_auth_config(
            auth_type=params.auth_type,
            username=params.username,
            password=params.password,
            token=params.token,
            client_id=params.client_id,
            client_secret=params.client_secret,
        )
        return params.instance, auth
