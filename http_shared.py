"""
Shared HTTP client for the outbound collaborators (Rolimons, Roblox thumbnails).

Goals:
- One httpx.AsyncClient per worker (connection pooling).
- Bounded timeouts: a slow CDN fails one icon, never the whole job.
"""

from __future__ import annotations

from typing import Optional

import httpx

from config import CFG

_LIMITS = httpx.Limits(max_connections=50, max_keepalive_connections=20, keepalive_expiry=30.0)


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(CFG.TIMEOUT, connect=CFG.CONNECT_TIMEOUT)


def _default_headers() -> dict:
    return {
        "Accept": "application/json, text/plain, */*",
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0 Safari/537.36"
        ),
    }


def make_client(transport: Optional[httpx.AsyncBaseTransport] = None,
                timeout: Optional[httpx.Timeout] = None) -> httpx.AsyncClient:
    """Build the worker's client. Tests pass an httpx.MockTransport."""
    return httpx.AsyncClient(
        timeout=timeout or default_timeout(),
        limits=_LIMITS,
        headers=_default_headers(),
        follow_redirects=True,
        transport=transport,
    )


async def close_client(client: Optional[httpx.AsyncClient]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        pass
