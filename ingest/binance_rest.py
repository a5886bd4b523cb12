import asyncio
import hmac
import hashlib
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
from yarl import URL

from config.settings import ExchangeSettings
from ingest.weight_budget import WeightBudget
from api.metrics import metrics


logger = logging.getLogger(__name__)

# Request weight per endpoint, relative to the /api base URL
ENDPOINT_WEIGHTS = {
    "/v3/exchangeInfo": 10,
    "/v3/ticker/24hr": 40,
    "/v3/ticker/price": 2,
    "/v3/order": 1,
    "/v3/order/oco": 1,
    "/v3/orderList": 4,
    "/v3/account": 10,
    "/v3/myTrades": 10,
    "/v3/openOrders": 3,
    "/v3/allOrders": 10,
}
ORDER_STATUS_WEIGHT = 2
DEFAULT_PUBLIC_WEIGHT = 1
DEFAULT_SIGNED_WEIGHT = 10

# Credential and signature failures never recover by retrying
FATAL_CODES = (-1022, -2014, -2015)
# Clock drift and server overload codes that are worth another attempt
TRANSIENT_CODES = (-1001, -1003, -1007, -1021)
# Order placements whose outcome is unknown after a timeout or 5xx are looked up
# by client id before any resubmit: post path -> (lookup path, id param, include symbol)
ORDER_LOOKUPS = {
    "/v3/order": ("/v3/order", "newClientOrderId", True),
    "/v3/order/oco": ("/v3/orderList", "listClientOrderId", False),
}
UNKNOWN_ORDER_CODE = -2013


class ExchangeError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str = ""):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class TransientExchangeError(ExchangeError):
    """Network failure, timeout, throttling or 5xx. Retried with backoff."""

    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str = "",
                 retry_after: Optional[float] = None):
        super().__init__(status, code, msg, body)
        self.retry_after = retry_after


class FatalExchangeError(ExchangeError):
    """IP ban or credential/signature failure. Never retried."""


class OrderRejectedError(ExchangeError):
    """Business rejection carrying the exchange's numeric code."""


def endpoint_weight(method: str, path: str, params: Optional[Mapping[str, Any]] = None,
                    signed: bool = False) -> int:
    if path == "/v3/order" and method.upper() == "GET":
        return ORDER_STATUS_WEIGHT
    if path == "/v3/ticker/24hr" and params and params.get("symbol"):
        return 2
    weight = ENDPOINT_WEIGHTS.get(path)
    if weight is not None:
        return weight
    return DEFAULT_SIGNED_WEIGHT if signed else DEFAULT_PUBLIC_WEIGHT


class BinanceRESTClient:
    """Signed, weight-budgeted Binance spot REST client with retry and error classification."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        settings: Optional[ExchangeSettings] = None,
        on_fatal: Optional[Callable[[ExchangeError], Awaitable[None]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        budget: Optional[WeightBudget] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.settings = settings or ExchangeSettings()
        self.on_fatal = on_fatal
        self._sleep = sleep
        self._clock = clock
        self.budget = budget or WeightBudget(
            self.settings.weight_limit,
            self.settings.weight_window_s,
            sleep=sleep,
        )
        self.healthy = True
        self.last_fatal_error: Optional[ExchangeError] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _sign(self, params: Dict[str, Any]) -> Tuple[str, Dict[str, str]]:
        if not self.api_key or not self.api_secret:
            raise FatalExchangeError(0, None, "API key/secret required for signed request")
        params["timestamp"] = int(self._clock() * 1000)
        params.setdefault("recvWindow", self.settings.recv_window)
        query = urlencode(params, doseq=True)
        signature = hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"{query}&signature={signature}", {"X-MBX-APIKEY": self.api_key}

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
    ) -> Tuple[int, Mapping[str, str], Any, str]:
        session = await self._get_session()
        async with session.request(
            method,
            URL(url, encoded=True),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.settings.rest_timeout_s),
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text
            return resp.status, resp.headers, payload, text

    def _classify(self, status: int, payload: Any, text: str,
                  headers: Mapping[str, str]) -> ExchangeError:
        code = None
        msg = None
        if isinstance(payload, dict):
            code = payload.get("code")
            msg = payload.get("msg")
        if status == 418:
            return FatalExchangeError(status, code, msg or "IP banned", text)
        if status == 429:
            retry_after = self._retry_after(headers)
            return TransientExchangeError(status, code, msg or "rate limited", text, retry_after=retry_after)
        if status >= 500:
            return TransientExchangeError(status, code, msg, text)
        if status == 401 or code in FATAL_CODES:
            return FatalExchangeError(status, code, msg, text)
        if code in TRANSIENT_CODES:
            return TransientExchangeError(status, code, msg, text)
        return OrderRejectedError(status, code, msg, text)

    def _retry_after(self, headers: Mapping[str, str]) -> float:
        raw = headers.get("Retry-After") if headers else None
        try:
            value = float(raw) if raw is not None else self.settings.retry_after_default_s
        except (TypeError, ValueError):
            value = self.settings.retry_after_default_s
        return max(0.0, min(value, self.settings.retry_after_max_s))

    def _sync_weight(self, headers: Mapping[str, str]) -> None:
        if not headers:
            return
        raw = headers.get("X-MBX-USED-WEIGHT-1M") or headers.get("x-mbx-used-weight-1m")
        if raw is None:
            return
        try:
            used = int(raw)
        except (TypeError, ValueError):
            return
        self.budget.sync_used(used)
        metrics.update_api_weight(used)

    async def _mark_unhealthy(self, error: ExchangeError) -> None:
        self.healthy = False
        self.last_fatal_error = error
        logger.critical("Exchange client disabled: %s", error)
        if self.on_fatal is not None:
            try:
                await self.on_fatal(error)
            except Exception:
                logger.exception("Fatal-error callback failed")

    @staticmethod
    def _outcome_unknown(error: ExchangeError) -> bool:
        """Network failures and 5xx leave it open whether the exchange executed the request."""
        return error.status == 0 or error.status >= 500

    async def _find_submitted_order(self, path: str, params: Mapping[str, Any],
                                    error: ExchangeError) -> Optional[Any]:
        """Look up an order placement by its client id.

        Returns the exchange's record when the order exists and None when it
        does not, so the caller may resubmit. Raises ``error`` when the
        placement carries no client id or the lookup fails, because
        resubmitting could then place the order twice.
        """
        lookup_path, id_param, with_symbol = ORDER_LOOKUPS[path]
        client_id = params.get(id_param)
        if not client_id:
            logger.error("%s outcome unknown and no %s to look it up; not resubmitting", path, id_param)
            raise error
        lookup = {"origClientOrderId": client_id}
        if with_symbol:
            lookup["symbol"] = params.get("symbol")
        try:
            found = await self._request("GET", lookup_path, params=lookup, signed=True)
        except OrderRejectedError as exc:
            if exc.code == UNKNOWN_ORDER_CODE:
                logger.info("Order %s was not placed; resubmitting", client_id)
                return None
            logger.error("Lookup of order %s rejected: %s", client_id, exc)
            raise error from exc
        except ExchangeError as exc:
            logger.error("Lookup of order %s failed: %s; not resubmitting", client_id, exc)
            raise error from exc
        logger.warning("Order %s was placed despite %s", client_id, error)
        return found

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        if not self.healthy:
            raise FatalExchangeError(418, None, "client disabled after fatal exchange error")

        method = method.upper()
        weight = endpoint_weight(method, path, params, signed)
        max_attempts = max(1, self.settings.retry_max_attempts)
        delay = self.settings.retry_delay_s
        attempt = 0

        while True:
            attempt += 1
            # Stamp after any budget wait so the timestamp stays inside recvWindow
            await self.budget.acquire(weight)
            request_params = dict(params or {})
            headers: Dict[str, str] = {}
            if signed:
                query, headers = self._sign(request_params)
            else:
                query = urlencode(request_params, doseq=True)
                if self.api_key:
                    headers["X-MBX-APIKEY"] = self.api_key
            url = f"{self.base_url}{path}"
            if query:
                url = f"{url}?{query}"

            error: ExchangeError
            try:
                status, resp_headers, payload, text = await self._send(method, url, headers)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                error = TransientExchangeError(0, None, f"{type(exc).__name__}: {exc}")
            else:
                self._sync_weight(resp_headers)
                if status < 400:
                    return payload
                error = self._classify(status, payload, text, resp_headers)

            if isinstance(error, FatalExchangeError):
                if error.status == 418:
                    await self._mark_unhealthy(error)
                raise error
            if not isinstance(error, TransientExchangeError):
                raise error
            if method == "POST" and path in ORDER_LOOKUPS and self._outcome_unknown(error):
                existing = await self._find_submitted_order(path, params or {}, error)
                if existing is not None:
                    return existing

            if attempt >= max_attempts:
                logger.error("%s %s failed after %s attempts: %s", method, path, attempt, error)
                raise error

            if error.status == 429:
                wait = error.retry_after or 0.0
                logger.warning("Rate limited on %s %s; cooling down %.1fs", method, path, wait)
            else:
                wait = delay + random.uniform(0, delay * 0.1)
                delay *= self.settings.retry_backoff
                logger.warning(
                    "%s %s failed (attempt %s/%s): %s; retrying in %.2fs",
                    method,
                    path,
                    attempt,
                    max_attempts,
                    error,
                    wait,
                )
            await self._sleep(wait)

    async def public_request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params, signed=False)

    async def signed_request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
    ) -> Any:
        return await self._request(method, path, params=params, signed=True)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
