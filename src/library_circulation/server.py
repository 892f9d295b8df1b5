"""Library Circulation MCP Server - FastMCP Implementation

Exposes the circulation core of a library to MCP clients over stdio.

Features exposed:
- Tools: borrow, return, renew, reserve, cancel, fine payment and the staff
  maintenance runs (expire reservations, sweep overdue loans)
- Resources: reservation queues, a user's loans and notifications,
  circulation statistics

Identity is resolved in front of this server; every tool input carries the
caller's user id and role.
"""

import logging
import signal
import sys
from typing import Any

from fastmcp import FastMCP

from .config import get_config
from .database.session import get_db_manager
from .resources import all_resources
from .tools import all_tools

config = get_config()

# Initialize logging - stderr for logs, stdout for MCP protocol
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)

logger = logging.getLogger(__name__)

# Create the FastMCP server instance
mcp = FastMCP(
    name=config.server_name,
    version=config.server_version,
    instructions=(
        "Library Circulation MCP Server - lends copies of books, takes them back, "
        "renews loans and keeps per-book waitlists. Use tools to borrow, return, renew "
        "and reserve; use resources to read queues, loans and notifications. Every "
        "tool call must name the calling user and their role."
    ),
)

# Register all resources with the MCP server

for resource in all_resources:
    uri = resource.get("uri_template", resource.get("uri"))
    if not uri:
        logger.error("Resource missing URI: %s", resource)
        continue

    logger.debug("Registering resource: %s with URI: %s", resource["name"], uri)
    try:
        mcp.resource(
            uri,
            name=resource["name"],
            description=resource["description"],
            mime_type=resource["mime_type"],
        )(resource["handler"])
    except Exception:
        logger.exception("Failed to register resource %s", resource["name"])
        raise

logger.info("Registered %d resources", len(all_resources))

# Register all tools with the MCP server
for tool in all_tools:
    logger.debug("Registering tool: %s", tool["name"])
    try:
        mcp.tool(
            name=tool["name"],
            description=tool["description"],
        )(tool["handler"])
    except Exception:
        logger.exception("Failed to register tool %s", tool["name"])
        raise

logger.info("Registered %d tools", len(all_tools))


def init_storage() -> None:
    """Create missing tables and check the database answers."""
    db_manager = get_db_manager()
    db_manager.init_database()
    if not db_manager.verify_connection():
        raise RuntimeError("Database is not reachable")


async def handle_shutdown() -> None:
    """Handle graceful server shutdown."""
    logger.info("MCP Server shutting down gracefully...")
    get_db_manager().close()
    logger.info("Shutdown complete")


def run_stdio_server() -> None:
    """Run the MCP server using stdio transport.

    Stdin receives JSON-RPC requests, stdout sends responses.
    """
    logger.info("Starting %s v%s on stdio transport", config.server_name, config.server_version)

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled - verbose protocol logging active")
    else:
        logging.getLogger("fastmcp").setLevel(logging.WARNING)

    # Set up signal handlers for graceful shutdown
    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        get_db_manager().close()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        logger.info("MCP Server ready and waiting for connections...")
        mcp.run(transport="stdio")
    except Exception:
        logger.exception("Fatal error in MCP server")
        sys.exit(1)


def main() -> None:
    """Main entry point for the MCP server.

    Started via the ``library-circulation`` script or
    ``python -m library_circulation.server``.
    """
    try:
        logger.info("=" * 60)
        logger.info("Library Circulation MCP Server")
        logger.info("Version: %s", config.server_version)
        logger.info("Database: %s", config.get_database_url())
        logger.info("Debug Mode: %s", config.debug)
        logger.info("=" * 60)

        init_storage()
        run_stdio_server()

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
