"""Waterline server entry point — ``python -m waterline.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from waterline.core.config.settings import get_settings
from waterline.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the Waterline MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.waterline_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.waterline_allow_insecure_bind and not _is_loopback_host(settings.waterline_host):
        raise RuntimeError(
            "Refusing to bind Waterline server to a non-loopback host without an auth layer. "
            "Set WATERLINE_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting Waterline server on %s:%d",
        settings.waterline_host,
        settings.waterline_port,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.waterline_host,
        port=settings.waterline_port,
    )


if __name__ == "__main__":
    run()
