import logging
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)


class NetworkError(Exception):
    """No HTTP response was received (connection failure or timeout)."""


class ApiError(Exception):
    """The server answered with an error status."""

    def __init__(self, status_code: int, message: str, payload: Any = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


class AuthenticationError(ApiError):
    """The server rejected the credentials (401/403)."""


class KraftlogClient:
    """Authenticated async REST client for the workout API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8080/api",
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_auth_failure: Optional[Callable[[AuthenticationError], None]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.on_auth_failure = on_auth_failure
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def _headers(self) -> dict:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    @staticmethod
    def _error_message(resp: httpx.Response) -> tuple[str, Any]:
        try:
            payload = resp.json()
        except ValueError:
            return resp.reason_phrase or "request failed", resp.text
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("detail")
            if isinstance(message, str):
                return message, payload
        return resp.reason_phrase or "request failed", payload

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        kwargs: dict = {"headers": self._headers()}
        if json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = timeout
        logger.debug("API request %s %s", method, path)
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path}: {e!r}") from e
        if resp.status_code >= 400:
            message, payload = self._error_message(resp)
            if resp.status_code in (401, 403):
                err = AuthenticationError(resp.status_code, message, payload)
                logger.warning("Authentication failed for %s %s", method, path)
                if self.on_auth_failure is not None:
                    self.on_auth_failure(err)
                raise err
            raise ApiError(resp.status_code, message, payload)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            # captive portals and proxies answer with HTML
            raise ApiError(resp.status_code, f"invalid JSON response: {e}", resp.text) from e

    async def get(self, path: str, timeout: Optional[float] = None) -> Any:
        return await self.request("GET", path, timeout=timeout)

    async def post(self, path: str, data: Any) -> Any:
        return await self.request("POST", path, json=data)

    async def put(self, path: str, data: Any) -> Any:
        return await self.request("PUT", path, json=data)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def aclose(self) -> None:
        await self._http.aclose()
