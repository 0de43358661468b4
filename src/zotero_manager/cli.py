import argparse
import asyncio
import json

from zotero_manager import logger, mcp, server_lifespan
from zotero_manager.client import get_zotero_client
from zotero_manager.errors import classify


def log_startup_config() -> None:
    """Log which library the server talks to, or why it cannot yet."""
    try:
        client = get_zotero_client()
    except Exception as e:  # noqa: BLE001
        logger.warning(f"Zotero client not ready: {classify(e).user_message()}")
        return
    logger.info(f"startup config: {json.dumps(client.config.summary(), separators=(',', ':'))}")


async def serve(transport: str) -> None:
    """Run one transport inside the process-wide lifespan."""
    async with server_lifespan():
        if transport == "sse":
            await mcp.run_sse_async()
        else:
            await mcp.run_stdio_async()


def main():
    parser = argparse.ArgumentParser(description="MCP server for a Zotero library via the Zotero Web API")
    parser.add_argument("--transport", choices=["stdio", "sse"], default="stdio", help="MCP transport (default: stdio)")
    parser.add_argument("--host", default=None, help="SSE bind address")
    parser.add_argument("--port", type=int, default=None, help="SSE bind port")
    args = parser.parse_args()

    log_startup_config()

    if args.host:
        mcp.settings.host = args.host
    if args.port:
        mcp.settings.port = args.port

    asyncio.run(serve(args.transport))


if __name__ == "__main__":
    main()
