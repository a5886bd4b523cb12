import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from api.metrics import metrics
from config.settings import StreamSettings
from monitoring.async_utils import cancel_tasks


logger = logging.getLogger(__name__)


class ListingPoller:
    """Polling fallback: full 24h ticker snapshots plus periodic exchange-info checks.

    Handlers:
      ``tickers``       -> complete dict of symbol -> 24h ticker
      ``exchange_info`` -> raw exchangeInfo payload, every ``delisting_check_every`` polls
    """

    def __init__(self, transport, settings: Optional[StreamSettings] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.transport = transport
        self.settings = settings or StreamSettings()
        self._sleep = sleep
        self.handlers: Dict[str, Callable] = {}
        self.running = False
        self.poll_count = 0
        self.fail_count = 0
        self.max_fails = 3
        self._task: Optional[asyncio.Task] = None

    def register_handler(self, event: str, handler: Callable):
        self.handlers[event] = handler

    async def poll_once(self) -> None:
        tickers = await self.transport.fetch_24h_tickers()
        self.poll_count += 1
        if "tickers" in self.handlers:
            await self.handlers["tickers"](tickers)

        every = max(1, self.settings.delisting_check_every)
        if self.poll_count % every == 0 and "exchange_info" in self.handlers:
            info = await self.transport.fetch_exchange_info()
            await self.handlers["exchange_info"](info)

    async def run(self):
        self.running = True
        try:
            while self.running:
                try:
                    await self.poll_once()
                    self.fail_count = 0
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    self.fail_count += 1
                    metrics.record_poll_failure()
                    log = logger.error if self.fail_count >= self.max_fails else logger.warning
                    log(
                        "Listing poll failed (%s consecutive): %s",
                        self.fail_count,
                        e,
                    )

                try:
                    await self._sleep(self.settings.polling_interval_s)
                except asyncio.CancelledError:
                    break
        finally:
            self.running = False

    async def start(self):
        if self._task is None or self._task.done():
            logger.info("Starting listing poller every %.1fs", self.settings.polling_interval_s)
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self.running = False
        task, self._task = self._task, None
        await cancel_tasks([task])
