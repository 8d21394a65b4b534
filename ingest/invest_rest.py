import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import ClientConfig


logger = logging.getLogger(__name__)

API_PACKAGE = "tinkoff.public.invest.api.contract.v1"

# gRPC status codes surfaced by the gateway in error bodies
CODE_INVALID_ARGUMENT = 3
CODE_PERMISSION_DENIED = 7
CODE_RESOURCE_EXHAUSTED = 8
CODE_UNAVAILABLE = 14
CODE_UNAUTHENTICATED = 16

FATAL_CODES = {CODE_INVALID_ARGUMENT, CODE_PERMISSION_DENIED, CODE_UNAUTHENTICATED}
FATAL_HTTP_STATUSES = {400, 401, 403}


class InvestAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], message: Optional[str],
                 description: Optional[str] = None, tracking_id: Optional[str] = None,
                 body: str = ''):
        self.status = status
        self.code = code
        self.message = message
        self.description = description
        self.tracking_id = tracking_id
        self.body = body
        text = (
            f"Invest API error (status={status}, code={code}, message={message}, "
            f"description={description}, tracking_id={tracking_id})"
        )
        super().__init__(text)


class TransportUnavailable(InvestAPIError):
    """The service is temporarily unreachable; idempotent calls retry on this."""


class TransportFatal(InvestAPIError):
    """Authentication, permission or argument failure; never retried."""


class BusinessError(InvestAPIError):
    """The call reached the broker and was refused (rejected order, rate limit, ...)."""


def classify_error(status: int, code: Optional[int], message: Optional[str],
                   description: Optional[str], tracking_id: Optional[str], body: str) -> InvestAPIError:
    if code == CODE_UNAVAILABLE or status in (502, 503, 504):
        cls = TransportUnavailable
    elif code in FATAL_CODES or (code is None and status in FATAL_HTTP_STATUSES):
        cls = TransportFatal
    else:
        cls = BusinessError
    return cls(status, code, message, description, tracking_id, body)


def describe_error(error: BaseException) -> str:
    """One-line diagnostic built from the gateway message header and tracking id."""
    if isinstance(error, InvestAPIError):
        parts = [error.message or error.description or str(error)]
        if error.tracking_id:
            parts.append(f"tracking_id={error.tracking_id}")
        return " ".join(parts)
    return str(error)


class InvestRESTClient:
    """JSON gateway client for the brokerage's unary RPC methods."""

    def __init__(self, client_config: ClientConfig, base_url: Optional[str] = None):
        self.config = client_config
        self.base_url = (base_url or f"https://{client_config.host}/rest").rstrip("/")
        self.rate_limit_remaining: Optional[int] = None
        self.last_message: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._sleep = asyncio.sleep

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"x-app-name": self.config.app_name, "Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
                self._session = aiohttp.ClientSession(headers=self.headers, timeout=timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def call(self, service: str, method: str, payload: Optional[Dict[str, Any]] = None,
                   idempotent: bool = True) -> Dict[str, Any]:
        """Invoke ``service/method``; idempotent calls retry while the service is unavailable."""
        attempts = 1
        if idempotent and not self.config.disable_all_retry:
            attempts = max(1, self.config.max_attempts)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._request(service, method, payload or {})
            except TransportUnavailable as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "%s/%s unavailable (attempt %s/%s): %s",
                    service, method, attempt, attempts, describe_error(exc),
                )
                await self._sleep(self.config.backoff_s)

    async def _request(self, service: str, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.base_url}/{API_PACKAGE}.{service}/{method}"
        try:
            async with session.post(url, data=json.dumps(payload)) as resp:
                text = await resp.text()
                self._record_headers(resp.headers)
                return self._parse_response(resp.status, resp.headers, text)
        except aiohttp.ClientConnectionError as exc:
            raise TransportUnavailable(0, CODE_UNAVAILABLE, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise TransportUnavailable(0, CODE_UNAVAILABLE, "request timed out") from exc

    def _record_headers(self, headers) -> None:
        remaining = headers.get("x-ratelimit-remaining")
        if remaining is not None:
            try:
                self.rate_limit_remaining = int(remaining)
            except (TypeError, ValueError):
                pass
        self.last_message = headers.get("message") or self.last_message

    def _parse_response(self, status: int, headers, text: str) -> Dict[str, Any]:
        try:
            payload: Any = json.loads(text) if text else {}
        except ValueError:
            payload = text

        if status >= 400:
            code = None
            message = headers.get("message")
            description = None
            if isinstance(payload, dict):
                code = payload.get("code")
                message = payload.get("message") or message
                description = payload.get("description")
            error = classify_error(status, code, message, description,
                                   headers.get("x-tracking-id"), text)
            logger.debug("Gateway error: %s", describe_error(error))
            raise error

        if not isinstance(payload, dict):
            raise BusinessError(status, None, "unexpected response body", None,
                                headers.get("x-tracking-id"), text)
        return payload
