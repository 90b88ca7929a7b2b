# app/processor/http.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger("settlement.http")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str


class HttpClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 20.0,
        auth: Optional[tuple[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        # transport is injectable so tests can use httpx.MockTransport
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout_s,
            auth=auth,
            transport=transport,
            follow_redirects=True,
        )

    def get(self, path: str, *, params: Any = None, headers: Optional[dict[str, str]] = None) -> HttpResponse:
        r = self._client.get(path, params=params, headers=headers)
        self._debug_dump("GET", path, r)
        return self._wrap(r)

    def post_form(
        self,
        path: str,
        *,
        data: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> HttpResponse:
        r = self._client.post(path, data=data, headers=headers)
        self._debug_dump("POST", path, r)
        return self._wrap(r)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, path: str, r: httpx.Response) -> None:
        # request bodies carry account ids and amounts; log the envelope only
        logger.debug("%s %s -> status=%s", method, path, r.status_code)


def is_retryable_http(code: int) -> bool:
    # Retry transient / throttling / gateway issues
    return code in (408, 425, 429, 500, 502, 503, 504)
