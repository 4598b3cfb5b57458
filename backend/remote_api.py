"""
Shared JSON-over-HTTP helper for OpenAI-compatible backends.
"""

from typing import Any, Dict, Optional, Type

import httpx

from errors import CapabilityError


def join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


async def post_json(
    base: str,
    endpoint: str,
    payload: Dict[str, Any],
    *,
    api_key: str = "",
    timeout_sec: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    error_cls: Type[CapabilityError] = CapabilityError,
) -> Dict[str, Any]:
    """
    POST ``payload`` and return the decoded JSON body.

    Raises:
        error_cls: on missing base URL, transport errors, non-2xx status or
                   a body that is not JSON.
    """
    if not base:
        raise error_cls(f"no API base configured for {endpoint}")

    url = join_api_url(base, endpoint)
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        timeout = httpx.Timeout(timeout_sec)
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            parsed = response.json()
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
        raise error_cls(f"{endpoint} request failed: {type(exc).__name__}: {exc}") from exc

    if isinstance(parsed, dict):
        return parsed
    return {"data": parsed}
