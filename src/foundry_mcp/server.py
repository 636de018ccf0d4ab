"""
Foundry MCP - Main entry point.

This module initializes and runs the MCP server with all registered
tools for ServiceNow integration.
"""

import logging
import os

import anyio
from mcp.server.fastmcp import FastMCP

from .config import Config, get_config
from .core.audit import get_audit_logger
from .core.context import ServerContext, build_context
from .tools import (
    register_connection_tools,
    register_instance_tools,
    register_query_tools,
    register_script_tools,
)

# Configure logging
logging.basicConfig(
    level=os.getenv("FOUNDRY_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVER_NAME = "foundry-mcp"

# Set by create_server()
mcp: FastMCP | None = None
context: ServerContext | None = None


def create_server(config: Config | None = None) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        config: Configuration to use. Defaults to the global config.

    Returns:
        Configured FastMCP Server instance.
    """
    global mcp, context

    config = config or get_config()
    server = FastMCP(SERVER_NAME)
    server_context = build_context(config, get_audit_logger())

    logger.info("Registering connection tools...")
    register_connection_tools(server, server_context)

    logger.info("Registering query tools...")
    register_query_tools(server, server_context)

    logger.info("Registering script tools...")
    register_script_tools(server, server_context)

    logger.info("Registering instance tools...")
    register_instance_tools(server, server_context)

    mcp = server
    context = server_context
    logger.info("Foundry MCP initialized")
    return server


async def run_stdio() -> None:
    """Run the server over stdio, closing open sessions on exit."""
    if mcp is None or context is None:
        raise RuntimeError("create_server() must be called before run_stdio()")
    try:
        await mcp.run_stdio_async()
    finally:
        await context.connections.close_all()


def run(transport: str = "stdio", host: str = "0.0.0.0", port: int = 8080) -> None:
    """Entry point for running the server.

    Args:
        transport: Transport type - "stdio" (default) or "sse" for HTTP.
        host: Host to bind to when using SSE transport.
        port: Port to bind to when using SSE transport.
    """
    server = create_server()

    if transport == "sse":
        import uvicorn

        logger.info(f"Starting SSE server on http://{host}:{port}")
        logger.info("SSE endpoint: /sse")
        logger.info("Messages endpoint: /messages/")
        app = server.sse_app()
        uvicorn.run(app, host=host, port=port)
    else:
        anyio.run(run_stdio)


def main():
    """CLI entry point with argument parsing."""
    import argparse

    parser = argparse.ArgumentParser(description="Foundry MCP Server")
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse"],
        default="stdio",
        help="Transport type (default: stdio)"
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to for SSE transport (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for SSE transport (default: 8080)"
    )

    args = parser.parse_args()
    run(transport=args.transport, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
