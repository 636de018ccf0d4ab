"""
Instance information tools for Foundry MCP.

Reports version and build details, detects AI and automation features by
plugin (falling back to checking the feature's tables), and optionally lists
installed plugins and basic health metrics.
"""

import logging
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import FastMCP

from ..core.audit import audit_tool_call
from ..core.client import ServiceNowClient
from ..core.context import ServerContext
from ..core.errors import ServiceNowError
from .base import DIVIDER, NOT_CONNECTED_MESSAGE, format_count, format_error

logger = logging.getLogger(__name__)

FEATURE_PLUGINS: dict[str, dict[str, Any]] = {
    "now_assist": {
        "plugins": ["com.snc.now_assist", "sn_now_assist", "com.glide.now_assist"],
        "tables": ["sys_now_assist_config", "sn_now_assist_skill"],
        "description": "Now Assist AI capabilities",
    },
    "virtual_agent": {
        "plugins": ["com.glide.cs.chatbot", "com.snc.virtual_agent"],
        "tables": ["sys_cs_topic", "sys_cb_topic"],
        "description": "Virtual Agent chatbot",
    },
    "aia": {
        "plugins": ["com.snc.aia", "sn_aia", "com.glide.aia"],
        "tables": ["sys_aia_execution", "sn_agent_execution"],
        "description": "AI Agents (Agentic AI)",
    },
    "predictive_intelligence": {
        "plugins": ["com.glide.platform_ml"],
        "tables": ["ml_capability_definition"],
        "description": "Predictive Intelligence / ML",
    },
    "flow_designer": {
        "plugins": ["com.glide.hub.flow_designer"],
        "tables": ["sys_hub_flow"],
        "description": "Flow Designer automation",
    },
    "integration_hub": {
        "plugins": ["com.glide.hub.integration"],
        "tables": ["sys_hub_spoke"],
        "description": "Integration Hub spokes",
    },
}

DEFAULT_FEATURES = ["now_assist", "virtual_agent", "aia"]
MAX_ACTIVE_PLUGINS_SHOWN = 50
MAX_INACTIVE_PLUGINS_LISTED = 10
MAX_SEMAPHORES_SAMPLED = 10
MAX_TRIGGERS_COUNTED = 100


@dataclass
class FeatureStatus:
    name: str
    enabled: bool
    description: str
    details: str


@dataclass
class PluginInfo:
    id: str
    name: str
    version: str
    active: bool


async def check_feature(client: ServiceNowClient, name: str) -> FeatureStatus:
    """Detect whether a feature is available on the instance.

    Looks for an active plugin first, then checks whether any of the
    feature's tables can be read.
    """
    feature = FEATURE_PLUGINS.get(name.lower())
    if feature is None:
        return FeatureStatus(name, False, "Unknown feature", "Feature not recognized")

    for plugin_id in feature["plugins"]:
        try:
            records = await client.query_table(
                "v_plugin", f"id={plugin_id}^active=true", ["id", "name"], limit=1
            )
        except ServiceNowError as e:
            logger.debug(f"Plugin lookup for {plugin_id} failed: {e.message}")
            continue
        if records:
            shown = records[0].get("name") or plugin_id
            return FeatureStatus(name, True, feature["description"], f"Plugin: {shown}")

    for table in feature["tables"]:
        try:
            await client.query_table(table, None, ["sys_id"], limit=1)
        except ServiceNowError as e:
            logger.debug(f"Feature table {table} not readable: {e.message}")
            continue
        return FeatureStatus(
            name, True, feature["description"], f"Table {table} accessible"
        )

    return FeatureStatus(
        name, False, feature["description"], "Plugin not found or not active"
    )


async def list_plugins(client: ServiceNowClient, limit: int = 200) -> list[PluginInfo]:
    """List installed plugins; empty if v_plugin is not readable."""
    try:
        records = await client.query_table(
            "v_plugin", "ORDERBYname", ["id", "name", "version", "active"], limit=limit
        )
    except ServiceNowError as e:
        logger.warning(f"Cannot list plugins: {e.message}")
        return []

    return [
        PluginInfo(
            id=r.get("id", ""),
            name=r.get("name") or r.get("id", ""),
            version=r.get("version") or "",
            active=str(r.get("active")).lower() == "true",
        )
        for r in records
    ]


@dataclass
class HealthMetrics:
    semaphores_available: int | None = None
    semaphores_max: int | None = None
    jobs_running: int | None = None
    jobs_queued: int | None = None


def _count(value: Any) -> int:
    try:
        return int(str(value))
    except ValueError:
        return 0


async def get_health_metrics(client: ServiceNowClient) -> HealthMetrics:
    """Sample semaphore usage and scheduled job counts.

    Each metric is left as None when its table cannot be read. Job counts
    stop at MAX_TRIGGERS_COUNTED.
    """
    metrics = HealthMetrics()

    try:
        semaphores = await client.query_table(
            "sys_semaphore", None, ["name", "max_count", "count"], limit=MAX_SEMAPHORES_SAMPLED
        )
    except ServiceNowError as e:
        logger.warning(f"Cannot read semaphores: {e.message}")
    else:
        total_max = sum(_count(s.get("max_count")) for s in semaphores)
        if total_max > 0:
            metrics.semaphores_max = total_max
            metrics.semaphores_available = sum(_count(s.get("count")) for s in semaphores)

    try:
        running = await client.query_table(
            "sys_trigger", "state=executing", ["sys_id"], limit=MAX_TRIGGERS_COUNTED
        )
        queued = await client.query_table(
            "sys_trigger", "state=queued", ["sys_id"], limit=MAX_TRIGGERS_COUNTED
        )
    except ServiceNowError as e:
        logger.warning(f"Cannot read scheduled jobs: {e.message}")
    else:
        metrics.jobs_running = len(running)
        metrics.jobs_queued = len(queued)

    return metrics


def _format_health(health: HealthMetrics) -> list[str]:
    lines = ["", DIVIDER, "HEALTH METRICS", DIVIDER]
    if health.semaphores_max:
        available = health.semaphores_available or 0
        usage = round((1 - available / health.semaphores_max) * 100)
        lines.append(
            f"Semaphores: {format_count(available)}/{format_count(health.semaphores_max)} "
            f"available ({usage}% used)"
        )
    if health.jobs_running is not None:
        lines.append(
            f"Scheduled Jobs: {format_count(health.jobs_running)} running, "
            f"{format_count(health.jobs_queued or 0)} queued"
        )
    if len(lines) == 4:
        lines.append("Health metrics not available (sys_semaphore and sys_trigger not readable).")
    return lines


def _format_plugins(plugins: list[PluginInfo]) -> list[str]:
    lines = ["", DIVIDER, f"INSTALLED PLUGINS ({len(plugins)})", DIVIDER]
    active = [p for p in plugins if p.active]
    inactive = [p for p in plugins if not p.active]

    if active:
        lines.append(f"\nActive ({len(active)}):")
        for plugin in active[:MAX_ACTIVE_PLUGINS_SHOWN]:
            lines.append(f"  - {plugin.name} ({plugin.id})")
        if len(active) > MAX_ACTIVE_PLUGINS_SHOWN:
            lines.append(f"  ... and {len(active) - MAX_ACTIVE_PLUGINS_SHOWN} more")

    if 0 < len(inactive) <= MAX_INACTIVE_PLUGINS_LISTED:
        lines.append(f"\nInactive ({len(inactive)}):")
        lines.extend(f"  - {p.name}" for p in inactive)
    elif inactive:
        lines.append(f"\nInactive: {len(inactive)} plugins")
    return lines


def register_instance_tools(mcp: FastMCP, context: ServerContext) -> None:
    """Register instance information tools with the MCP server.

    Args:
        mcp: The FastMCP server instance.
        context: Shared server state.
    """
    connections = context.connections

    @mcp.tool()
    @audit_tool_call("servicenow_instance")
    async def servicenow_instance(
        include_plugins: bool = False,
        check_features: list[str] | None = None,
        include_health: bool = False,
    ) -> str:
        """Get ServiceNow instance version, build and feature information.

        Args:
            include_plugins: Also list installed plugins (default False).
            check_features: Features to check. Known features: now_assist,
                virtual_agent, aia, predictive_intelligence, flow_designer,
                integration_hub. Defaults to now_assist, virtual_agent, aia.
            include_health: Also report semaphore usage and scheduled job
                counts (default False).

        Returns:
            Formatted instance report.
        """
        client = connections.get_active_client()
        session = connections.get_active_session()
        if client is None or session is None:
            return NOT_CONNECTED_MESSAGE

        connections.touch()
        try:
            info = await client.get_instance_info()
        except ServiceNowError as e:
            return format_error(e, prefix="Failed to get instance info")

        features = [
            await check_feature(client, name)
            for name in (check_features or DEFAULT_FEATURES)
        ]

        lines = [
            "ServiceNow Instance Information",
            "═" * 60,
            "",
            f"Instance: {session.instance_url}",
            f"Version: {info.version}",
            f"Build: {info.build_tag or 'N/A'}",
        ]
        if info.build_name:
            lines.append(f"Build Name: {info.build_name}")
        if info.build_date:
            lines.append(f"Build Date: {info.build_date}")

        lines.extend(["", DIVIDER, "FEATURES", DIVIDER])
        for feature in features:
            icon = "[ON]" if feature.enabled else "[OFF]"
            lines.append(f"{icon} {feature.name}: {feature.description}")
            lines.append(f"    {feature.details}")

        if include_plugins:
            plugins = await list_plugins(client)
            if plugins:
                lines.extend(_format_plugins(plugins))
            else:
                lines.append("\nPlugin list not available (v_plugin not readable).")

        if include_health:
            lines.extend(_format_health(await get_health_metrics(client)))

        roles = session.roles
        roles_text = ", ".join(roles[:5])
        if len(roles) > 5:
            roles_text += f" (+{len(roles) - 5} more)"
        lines.extend([
            "",
            DIVIDER,
            "CONNECTION",
            DIVIDER,
            f"User: {session.user_name}",
            f"Roles: {roles_text or '(none)'}",
            f"Connected: {session.created_at.isoformat()}",
        ])
        return "\n".join(lines)
