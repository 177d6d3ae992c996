"""Run MCP server (stdio or HTTP). Session commands and CRM queries over WhatsApp."""
import asyncio
import logging
import sys

from core.config import settings
from mcp_server.server import mcp

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)
logger = logging.getLogger("mcp_server")


def serve_http(port: int | None = None) -> int:
    import uvicorn

    port = port or settings.MCP_PORT
    mcp.settings.host = "0.0.0.0"
    mcp.settings.port = port
    starlette_app = mcp.streamable_http_app()
    config = uvicorn.Config(starlette_app, host="0.0.0.0", port=port, log_level="info")
    logger.info("Serving MCP over HTTP on :%d", port)
    asyncio.run(uvicorn.Server(config).serve())
    return 0


def main() -> int:
    if len(sys.argv) > 1 and sys.argv[1] == "serve":
        return serve_http()
    mcp.run(transport="stdio")
    return 0


if __name__ == "__main__":
    sys.exit(main())
