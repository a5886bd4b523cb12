import asyncio
import json
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from api.metrics import metrics
from config.settings import StreamSettings
from monitoring.async_utils import cancel_tasks


logger = logging.getLogger(__name__)

ALL_MARKET_STREAM = "!miniTicker@arr"


class MonitorState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DEGRADED = "DEGRADED"
    TERMINATED = "TERMINATED"


class StreamStale(ConnectionError):
    pass


class MarketStreamMonitor:
    """All-market ticker feed with heartbeat, bounded reconnect and termination.

    Handlers:
      ``connected``  -> called after every successful (re)connect
      ``tickers``    -> dict of symbol -> mini ticker for each pushed batch
      ``terminated`` -> reconnect budget exhausted; caller falls back to polling
    """

    def __init__(
        self,
        stream_url: str,
        settings: Optional[StreamSettings] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = f"{stream_url.rstrip('/')}/{ALL_MARKET_STREAM}"
        self.settings = settings or StreamSettings()
        self._connect = connect
        self._sleep = sleep

        self.handlers: Dict[str, Callable] = {}
        self.state = MonitorState.DISCONNECTED
        self.running = False
        self.attempts = 0
        self.messages_received = 0
        self.last_message_at: Optional[float] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def register_handler(self, event: str, handler: Callable):
        self.handlers[event] = handler

    def _set_state(self, state: MonitorState) -> None:
        if state is self.state:
            return
        logger.info("Market stream %s -> %s", self.state.value, state.value)
        self.state = state
        metrics.update_monitor_state(state.value)

    async def _emit(self, event: str, payload: Any = None) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            return
        await handler(payload)

    async def run(self):
        self.running = True
        while self.running:
            self._set_state(MonitorState.CONNECTING)
            try:
                ws = await asyncio.wait_for(
                    self._connect(self.url, ping_interval=None),
                    timeout=self.settings.connect_timeout_s,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Market stream connect failed: %s", e)
                self._set_state(MonitorState.DISCONNECTED)
                if not await self._schedule_reconnect():
                    break
                continue

            self._ws = ws
            try:
                self.attempts = 0
                self.last_message_at = time.monotonic()
                self._set_state(MonitorState.CONNECTED)
                await self._emit("connected")
                self._heartbeat_task = asyncio.create_task(self._heartbeat(ws))
                await self._consume(ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Market stream error: %s", e)
            finally:
                await self._teardown(ws)

            if not self.running:
                break
            self._set_state(MonitorState.DISCONNECTED)
            if not await self._schedule_reconnect():
                break

        if self.state is not MonitorState.TERMINATED:
            self._set_state(MonitorState.DISCONNECTED)

    async def _consume(self, ws):
        while self.running:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.settings.heartbeat_timeout_s)
            except asyncio.TimeoutError:
                self._set_state(MonitorState.DEGRADED)
                raise StreamStale(
                    f"no market data for {self.settings.heartbeat_timeout_s:.0f}s"
                )
            self.last_message_at = time.monotonic()
            self.messages_received += 1
            if self.state is MonitorState.DEGRADED:
                self._set_state(MonitorState.CONNECTED)
            await self._handle_message(raw)

    async def _handle_message(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON stream frame")
            return
        if isinstance(data, dict) and "data" in data:
            data = data["data"]
        if isinstance(data, dict):
            data = [data] if data.get("s") else []
        if not isinstance(data, list):
            return
        tickers = {
            item["s"]: item
            for item in data
            if isinstance(item, dict) and item.get("s")
        }
        if tickers:
            await self._emit("tickers", tickers)

    async def _heartbeat(self, ws):
        """Ping on an interval; a missing pong marks the link degraded and closes it."""
        while self.running:
            await asyncio.sleep(self.settings.heartbeat_interval_s)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.settings.heartbeat_timeout_s)
                self.last_message_at = time.monotonic()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Market stream heartbeat failed: %s", e)
                self._set_state(MonitorState.DEGRADED)
                await ws.close()
                return

    async def _teardown(self, ws) -> None:
        if self._heartbeat_task is not None:
            await cancel_tasks([self._heartbeat_task])
            self._heartbeat_task = None
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Market stream close error: %s", e)
        self._ws = None

    async def _schedule_reconnect(self) -> bool:
        self.attempts += 1
        if self.attempts > self.settings.reconnect_max_attempts:
            logger.error(
                "Market stream reconnect budget exhausted after %s attempts",
                self.settings.reconnect_max_attempts,
            )
            self.running = False
            self._set_state(MonitorState.TERMINATED)
            await self._emit("terminated", "reconnect_exhausted")
            return False

        delay = self.settings.reconnect_delay_s * self.attempts + random.uniform(0, 0.5)
        metrics.record_reconnect()
        logger.info(
            "Reconnecting market stream in %.1fs (attempt %s/%s)",
            delay,
            self.attempts,
            self.settings.reconnect_max_attempts,
        )
        await self._sleep(delay)
        return self.running

    async def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self.running = False
        task, self._task = self._task, None
        await cancel_tasks([task])
        if self._ws is not None:
            await self._teardown(self._ws)
        if self.state is not MonitorState.TERMINATED:
            self._set_state(MonitorState.DISCONNECTED)
