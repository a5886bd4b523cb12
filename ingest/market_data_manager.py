import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from api.metrics import metrics
from config.settings import StreamSettings
from ingest.listing_diff import ListingEvent, SymbolFilter, compute_listing_diff
from ingest.rest_poller import ListingPoller
from ingest.websocket_client import MarketStreamMonitor

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class MarketDataManager:
    """Own the known-symbol set and turn push or poll snapshots into listing events.

    The push feed runs first. When it terminates, polling takes over for the
    rest of the session. New listings land on a bounded queue that drops the
    oldest event when full.
    """

    _ALIASES = {
        'delisting_handler': 'delisted',
        'fallback_handler': 'fallback',
    }

    def __init__(
        self,
        transport,
        stream_monitor: MarketStreamMonitor,
        poller: ListingPoller,
        symbol_filter: SymbolFilter,
        settings: Optional[StreamSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.stream_monitor = stream_monitor
        self.poller = poller
        self.symbol_filter = symbol_filter
        self.settings = settings or StreamSettings()
        self._clock = clock

        self.known_symbols: Set[str] = set()
        self.seeded = False
        self.mode = 'stream'
        self.events: asyncio.Queue = asyncio.Queue(maxsize=self.settings.queue_size)
        self.dropped_events = 0
        self._recent: Dict[str, float] = {}
        self._handlers: Dict[str, Handler] = {}

        self._register_stream_handlers()
        self._register_poll_handlers()

    def _register_stream_handlers(self) -> None:
        self.stream_monitor.register_handler('connected', self._build_dispatcher('connected', self._on_connected))
        self.stream_monitor.register_handler('tickers', self._build_dispatcher('tickers', self._on_stream_tickers))
        self.stream_monitor.register_handler('terminated', self._build_dispatcher('terminated', self._on_terminated))

    def _register_poll_handlers(self) -> None:
        self.poller.register_handler('tickers', self._build_dispatcher('poll_tickers', self._on_poll_tickers))
        self.poller.register_handler('exchange_info', self._build_dispatcher('exchange_info', self.apply_exchange_info))

    def register_handlers(self, **handlers: Handler) -> None:
        """Register async callbacks for ``delisted`` and ``fallback`` notifications."""
        for key, handler in handlers.items():
            if handler is None:
                continue
            self._handlers[self._ALIASES.get(key, key)] = handler

    def _build_dispatcher(self, logical_name: str, target: Handler) -> Handler:
        async def _dispatch(payload: Any = None):
            try:
                await target(payload)
            except Exception:
                logger.exception("Market data handler %s failed", logical_name)

        return _dispatch

    async def _notify(self, name: str, payload: Any) -> None:
        handler = self._handlers.get(name)
        if not handler:
            return
        try:
            await handler(payload)
        except Exception:
            logger.exception("Market data listener %s failed", name)

    async def _on_connected(self, _payload: Any = None) -> None:
        await self.refresh_known_symbols()

    async def _on_stream_tickers(self, tickers: Mapping[str, Mapping[str, Any]]) -> None:
        self.apply_tickers(tickers, complete=False, source='stream')

    async def _on_poll_tickers(self, tickers: Mapping[str, Mapping[str, Any]]) -> None:
        self.apply_tickers(tickers, complete=True, source='poll')

    async def _on_terminated(self, reason: Any = None) -> None:
        await self.activate_polling(str(reason or 'stream_terminated'))

    async def refresh_known_symbols(self) -> None:
        info = await self.transport.fetch_exchange_info()
        await self.apply_exchange_info(info)

    async def apply_exchange_info(self, exchange_info: Mapping[str, Any]) -> None:
        tradable = self.symbol_filter.tradable_symbols(exchange_info)
        if not self.seeded:
            self.known_symbols = set(tradable)
            self.seeded = True
            logger.info("Seeded %s known %s symbols", len(tradable), self.symbol_filter.quote_asset)
            return
        # Exchange info lists every live symbol; only delistings are taken from it.
        # New symbols wait for their first ticker so the event carries a price.
        diff = compute_listing_diff(self.known_symbols, {s: {} for s in tradable}, complete=True)
        for symbol in sorted(diff.delisted):
            await self._handle_delisting(symbol)

    def apply_tickers(self, tickers: Mapping[str, Mapping[str, Any]], complete: bool,
                      source: str) -> int:
        """Diff a ticker snapshot against the known set; returns the number of events published."""
        candidates = self.symbol_filter.filter_tickers(tickers)
        if not self.seeded:
            if not complete:
                logger.debug("Ignoring partial ticker batch before the symbol set is seeded")
                return 0
            self.known_symbols = set(candidates)
            self.seeded = True
            logger.info("Seeded %s known symbols from %s snapshot", len(candidates), source)
            return 0

        # Ticker snapshots can include halted symbols, so delistings come from exchange info.
        diff = compute_listing_diff(self.known_symbols, candidates, complete=False)
        published = 0
        now = self._clock()
        for symbol, ticker in diff.new.items():
            self.known_symbols.add(symbol)
            event = ListingEvent.from_ticker(symbol, ticker, source=source, detected_at=now)
            if self.publish(event):
                published += 1
        return published

    async def _handle_delisting(self, symbol: str) -> None:
        self.known_symbols.discard(symbol)
        self._recent.pop(symbol, None)
        metrics.record_delisting()
        logger.warning("Symbol delisted: %s", symbol)
        await self._notify('delisted', {'symbol': symbol, 'detected_at': self._clock()})

    def publish(self, event: ListingEvent) -> bool:
        now = self._clock()
        window = self.settings.detection_window_s
        self._recent = {s: ts for s, ts in self._recent.items() if now - ts < window}
        if event.symbol in self._recent:
            logger.debug("Duplicate listing event for %s suppressed", event.symbol)
            return False
        self._recent[event.symbol] = now

        if self.events.full():
            dropped = self.events.get_nowait()
            self.dropped_events += 1
            metrics.record_drop('listing_queue_full')
            logger.warning("Listing queue full; dropped oldest event for %s", dropped.symbol)
        self.events.put_nowait(event)
        metrics.record_listing(event.source)
        metrics.update_queue_depth('listings', self.events.qsize())
        logger.info(
            "New listing detected: %s price=%s quote_volume=%.0f (%s)",
            event.symbol,
            event.price,
            event.quote_volume,
            event.source,
        )
        return True

    async def next_event(self) -> ListingEvent:
        event = await self.events.get()
        metrics.update_queue_depth('listings', self.events.qsize())
        return event

    async def activate_polling(self, reason: str) -> None:
        if self.mode == 'polling':
            return
        self.mode = 'polling'
        metrics.record_fallback()
        logger.warning("Switching market monitoring to polling: %s", reason)
        await self.poller.start()
        await self._notify('fallback', {'reason': reason})

    def status(self) -> Dict[str, Any]:
        return {
            'mode': self.mode,
            'stream_state': self.stream_monitor.state.value,
            'known_symbols': len(self.known_symbols),
            'queued_events': self.events.qsize(),
            'dropped_events': self.dropped_events,
            'poll_count': self.poller.poll_count,
        }

    async def start(self):
        self.mode = 'stream'
        await self.stream_monitor.start()

    async def stop(self):
        await self.stream_monitor.stop()
        await self.poller.stop()
