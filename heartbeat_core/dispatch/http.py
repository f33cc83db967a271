"""
HTTP DISPATCHER
===============

Delivers directives to an orchestrator gateway over HTTP.

Request:
    POST {base_url}/dispatch
    Authorization: Bearer {auth_token}     (when configured)
    {"session_id": ..., "directive": "...", "principal_id": ..., "source": "heartbeat"}

Response (200):
    {"result": "<text>"}   or a plain-text body

A non-2xx status raises ``DispatchError`` except 429, whose body is returned
as result text so the rate-limit coordinator can parse its reset hint.
"""

import logging
from typing import Any, Optional

import requests

from .base import DispatchError, Dispatcher

logger = logging.getLogger(__name__)


class HttpDispatcher(Dispatcher):
    """Posts directives to ``{base_url}/dispatch``."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout_seconds: float = 600.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._headers = {"Content-Type": "application/json"}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"

    @property
    def name(self) -> str:
        return "http"

    def dispatch(self, session_id: Any, directive: str, principal_id: Any) -> str:
        payload = {
            "session_id": session_id,
            "directive": directive,
            "principal_id": principal_id,
            "source": "heartbeat",
        }

        try:
            resp = self._session.post(
                f"{self.base_url}/dispatch",
                json=payload,
                headers=self._headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise DispatchError(f"POST /dispatch failed: {e}") from e

        if resp.status_code == 429:
            logger.debug("Dispatcher returned 429: %s", resp.text[:200])
            return f"rate limit: {resp.text}"

        if not resp.ok:
            raise DispatchError(
                f"POST /dispatch returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError:
            return resp.text

        if isinstance(data, dict):
            result = data.get("result", "")
            return "" if result is None else str(result)
        return str(data)

    def close(self) -> None:
        self._session.close()
