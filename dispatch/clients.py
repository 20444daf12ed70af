from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from settings.config import settings

logger = logging.getLogger(__name__)


class ServiceClient:
    """
    Thin httpx wrapper for posting jobs to the external classifier / extraction services.

    Transport failures propagate as ``httpx.TransportError``; HTTP error statuses are
    returned to the caller untouched so it can tell "rejected" from "unreachable".
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._http = http
        self.timeout = timeout or settings.DISPATCH_TIMEOUT_SECONDS

    async def post_job(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload)


def extract_job_id(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    job_id = body.get("job_id") or body.get("id")
    return str(job_id) if job_id else None
