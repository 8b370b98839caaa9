"""Entry point for the Countly MCP server."""

import logging
import os

from countly_mcp.server import build_server
from countly_mcp.settings import Settings


def _configure_logging() -> None:
    # basicConfig writes to stderr, which keeps stdout free for the stdio transport.
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main() -> None:
    """Bootstrap and run the configured MCP transport."""
    _configure_logging()
    logger = logging.getLogger("countly-mcp-server")
    settings = Settings.load()
    server = build_server(settings)

    try:
        server.startup()
        if settings.mcp_transport != "stdio":
            logger.info(
                "MCP %s server ready at http://%s:%s",
                settings.mcp_transport,
                settings.mcp_host,
                settings.mcp_port,
            )
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutdown requested (Ctrl+C).")
    except Exception:
        logger.exception("Server stopped due to an unexpected error.")
        raise
    finally:
        server.shutdown()
        logger.info("Server shutdown complete.")


if __name__ == "__main__":
    main()
