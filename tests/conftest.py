"""Shared test fixtures for Foundry MCP tests.

This module provides common fixtures for auth configs, mocked clients,
temporary configuration and isolated audit state.
"""

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from foundry_mcp.config import Config
from foundry_mcp.core.audit import AuditLogger
from foundry_mcp.core.auth import BasicAuth, OAuthAuth, TokenAuth
from foundry_mcp.core.client import InstanceInfo, ServiceNowClient, UserInfo
from foundry_mcp.core.context import ServerContext

# =============================================================================
# Auth Fixtures
# =============================================================================


@pytest.fixture
def basic_auth() -> BasicAuth:
    """Provide basic auth credentials."""
    return BasicAuth(username="admin", password="secret")


@pytest.fixture
def token_auth() -> TokenAuth:
    """Provide a bearer token config."""
    return TokenAuth(token="tok-123")


@pytest.fixture
def oauth_auth() -> OAuthAuth:
    """Provide OAuth credentials without an access token."""
    return OAuthAuth(client_id="cid", client_secret="csecret")


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture
def mock_client_factory() -> Callable[[str, Any], MagicMock]:
    """Provide a factory of mock ServiceNowClients that connect successfully."""

    def factory(instance: str, auth: Any) -> MagicMock:
        from foundry_mcp.core.client import normalize_instance_url

        client = MagicMock(spec=ServiceNowClient)
        client.instance_url = normalize_instance_url(instance)
        client.auth = auth
        client.needs_token = False
        client.authenticate = AsyncMock()
        client.test_connection = AsyncMock(
            return_value=InstanceInfo(version="Vancouver", build_tag="glide-vancouver-07-2025")
        )
        client.get_current_user = AsyncMock(
            return_value=UserInfo(sys_id="u1", user_name="admin", roles=["admin", "itil"])
        )
        client.close = AsyncMock()
        return client

    return factory


# =============================================================================
# Configuration and Audit Fixtures
# =============================================================================


@pytest.fixture
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    """Provide a Config reading from an empty temporary directory."""
    monkeypatch.setenv("FOUNDRY_CREDENTIALS_PATH", str(tmp_path / "credentials.json"))
    monkeypatch.setenv("FOUNDRY_AUDIT_DIR", str(tmp_path / "audit"))
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return Config(config_dir=config_dir)


@pytest.fixture
def audit_logger(tmp_path: Path) -> AuditLogger:
    """Provide an AuditLogger writing to a temporary directory."""
    return AuditLogger(log_dir=tmp_path / "audit")


# =============================================================================
# Singleton Reset Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_singletons(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Reset singleton instances between tests.

    Audit output is redirected to a temporary directory so tool calls
    never write into the project tree.
    """
    import foundry_mcp.config as config_module
    import foundry_mcp.core.audit as audit_module

    monkeypatch.setenv("FOUNDRY_AUDIT_DIR", str(tmp_path / "audit"))

    orig_audit = audit_module._audit_logger
    orig_config = config_module._config

    audit_module._audit_logger = None
    config_module._config = None

    yield

    audit_module._audit_logger = orig_audit
    config_module._config = orig_config


# =============================================================================
# Tool Fixtures
# =============================================================================


@pytest.fixture
def server_context(
    temp_config: Config,
    audit_logger: AuditLogger,
    mock_client_factory: Callable[[str, Any], MagicMock],
) -> ServerContext:
    """Provide a ServerContext whose connections use mock clients."""
    from foundry_mcp.core.connection import ConnectionManager
    from foundry_mcp.core.context import build_context

    context = build_context(temp_config, audit_logger)
    context.connections = ConnectionManager(client_factory=mock_client_factory)
    context.scripts.connections = context.connections
    return context


@pytest.fixture
def capture_mcp() -> tuple[MagicMock, dict[str, Callable[..., Any]]]:
    """Provide a mock MCP server that collects registered tool functions."""
    tools: dict[str, Callable[..., Any]] = {}

    def capture_tool():
        def decorator(func):
            tools[func.__name__] = func
            return func
        return decorator

    mcp = MagicMock()
    mcp.tool = capture_tool
    return mcp, tools
