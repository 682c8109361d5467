from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx


@asynccontextmanager
async def client_session(client: httpx.AsyncClient | None, *, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as temp_client:
        yield temp_client


def response_detail(response: httpx.Response, *, limit: int = 200) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:limit]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or error.get("type")
            if isinstance(message, str):
                return message[:limit]
        if isinstance(error, str):
            description = payload.get("error_description")
            return f"{error}: {description}"[:limit] if isinstance(description, str) else error[:limit]
    return response.text[:limit]
