"""Host address helpers for the server-info endpoint."""

import ipaddress
import logging
import socket
from typing import Sequence

import httpx

logger = logging.getLogger(__name__)

PUBLIC_IP_ENDPOINTS = (
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
)


async def get_public_ip(
    endpoints: Sequence[str] = PUBLIC_IP_ENDPOINTS,
    timeout: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """Ask each endpoint in turn; the first valid address wins."""
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        for url in endpoints:
            try:
                resp = await client.get(url)
                resp.raise_for_status()
                candidate = resp.text.strip()
                ipaddress.ip_address(candidate)
                return candidate
            except (httpx.HTTPError, ValueError) as e:
                logger.debug("Public IP lookup via %s failed: %s", url, e)
    return None


def get_local_ip() -> str:
    """LAN address of the default route; no packet is actually sent."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()
