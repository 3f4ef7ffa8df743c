"""HTTP client for the remote print queue API."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..config import ApiConfig
from ..core import JobId, RemoteJob, RemoteQueueClient, RemoteQueueError

LOGGER = logging.getLogger(__name__)

_NO_JOB_STATUSES = frozenset({204, 404})


class HttpRemoteQueueClient(RemoteQueueClient):
    """Fetches pending jobs and reports completions over HTTP.

    Requests carry ``Authorization: Bearer <token>`` when a token is given
    (per call, or from the configuration as a fallback) and are anonymous
    otherwise.
    """

    def __init__(
        self,
        config: ApiConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch_next(self, token: Optional[str] = None) -> Optional[RemoteJob]:
        session = self._ensure_session()
        url = self.config.next_job_url

        try:
            async with session.get(
                url, headers=self._headers(token), timeout=self._timeout
            ) as response:
                if response.status in _NO_JOB_STATUSES:
                    return None
                body = await response.text()
                if response.status >= 400:
                    raise RemoteQueueError(
                        f"API {response.status}: {body.strip() or 'unknown error'}"
                    )
        except asyncio.TimeoutError as exc:
            raise RemoteQueueError(
                f"API timed out after {self.config.timeout_seconds:.0f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise RemoteQueueError(f"API request failed: {exc}") from exc

        return parse_remote_job(body)

    async def report_printed(self, job_id: JobId, token: Optional[str] = None) -> bool:
        session = self._ensure_session()
        url = self.config.report_url
        payload = {"id": job_id, "status": self.config.printed_status}

        try:
            async with session.post(
                url, json=payload, headers=self._headers(token), timeout=self._timeout
            ) as response:
                if response.status >= 400:
                    detail = await response.text()
                    LOGGER.warning(
                        "Status update for job %s rejected: API %s: %s",
                        job_id,
                        response.status,
                        detail.strip() or "unknown error",
                    )
                    return False
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            LOGGER.warning("Status update for job %s failed: %s", job_id, exc)
            return False

        return True

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        bearer = token or self.config.token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session


def parse_remote_job(body: str) -> Optional[RemoteJob]:
    """Parse a next-job response body.

    Accepted shapes are ``{"url": ..., "id": ..., "filename": ...}`` (also
    ``s3_url`` and ``name``) or a bare JSON string holding the URL. Anything
    else means there is no job.
    """
    text = (body or "").strip()
    if not text:
        return None

    try:
        data: Any = json.loads(text)
    except ValueError:
        LOGGER.debug("Ignoring non-JSON queue response: %.80s", text)
        return None

    if isinstance(data, str):
        return RemoteJob(url=data) if data else None

    if not isinstance(data, dict):
        return None

    url = data.get("url") or data.get("s3_url")
    if not url:
        return None

    filename = data.get("filename") or data.get("name") or None
    return RemoteJob(url=str(url), id=data.get("id"), filename=filename)
