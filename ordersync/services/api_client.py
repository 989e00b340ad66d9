import asyncio
import json
import logging
from typing import Any, Dict, NamedTuple, Optional

import requests

from ordersync.services.errors import ApiError

logger = logging.getLogger("ordersync.api")


class ApiResponse(NamedTuple):
    status: int
    data: Any


class ResourceClient:
    """Thin async wrapper over a ``requests.Session``.

    Each call runs the blocking request in a worker thread so the event loop
    keeps processing push events and timer ticks while it is in flight.
    Non-2xx answers raise ``ApiError(status, payload)``; network failures and
    timeouts raise ``ApiError(None, ...)``.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 15,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token or None
        self.timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, body: Any = None, params: Optional[dict] = None) -> ApiResponse:
        url = self._url(path)
        try:
            resp = self._session.request(
                method,
                url,
                data=json.dumps(body) if body is not None else None,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ApiError(None, None, f"{method} {path} timed out") from e
        except requests.RequestException as e:
            raise ApiError(None, None, f"{method} {path} failed: {e}") from e

        payload = _decode(resp)
        if resp.status_code < 200 or resp.status_code >= 300:
            logger.info(f"{method} {path} -> {resp.status_code}")
            raise ApiError(resp.status_code, payload, f"{method} {path} -> {resp.status_code}")
        logger.debug(f"{method} {path} -> {resp.status_code}")
        return ApiResponse(resp.status_code, payload)

    async def request(self, method: str, path: str, body: Any = None, params: Optional[dict] = None) -> ApiResponse:
        return await asyncio.to_thread(self._send, method, path, body, params)

    async def get(self, path: str, params: Optional[dict] = None) -> ApiResponse:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None) -> ApiResponse:
        return await self.request("POST", path, body=body)

    async def put(self, path: str, body: Any = None) -> ApiResponse:
        return await self.request("PUT", path, body=body)

    async def patch(self, path: str, body: Any = None) -> ApiResponse:
        return await self.request("PATCH", path, body=body)

    async def delete(self, path: str) -> ApiResponse:
        return await self.request("DELETE", path)

    def close(self) -> None:
        self._session.close()


def _decode(resp: requests.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text
