import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Union

from api import alerts
from api.metrics import metrics, start_metrics_server
from config.settings import BotSettings, ConfigurationError
from ingest.binance_rest import BinanceRESTClient, ExchangeError
from ingest.listing_diff import ListingEvent, SymbolFilter
from ingest.market_data_manager import MarketDataManager
from ingest.rest_poller import ListingPoller
from ingest.websocket_client import MarketStreamMonitor
from orchestration.environment import EnvironmentManager, EnvironmentProfile
from orchestration.persistence import InMemoryPositionStore, PositionStore, PostgresPositionStore
from risk.position_sizer import RiskManager
from strategy.execution import OrderGateway
from strategy.position_manager import BuyResult, PositionManager, ProtectionResult
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import BinanceTransport
from monitoring.logging_utils import setup_logging
from monitoring.async_utils import cancel_tasks, run_tasks_with_cleanup


logger = logging.getLogger(__name__)


def build_store(settings: BotSettings) -> PositionStore:
    database = settings.database or {}
    if str(database.get('enabled', '')).lower() in ('1', 'true', 'yes', 'on'):
        return PostgresPositionStore(database)
    return InMemoryPositionStore()


class ListingBot:
    """Wire market monitoring, sizing, execution and position tracking for one environment.

    Listing events flow from the market data queue into ``handle_listing``,
    which filters, buys and protects. Reconciliation runs on its own loop.
    Environment switches rebuild every exchange-facing component.
    """

    def __init__(
        self,
        settings: Optional[BotSettings] = None,
        store: Optional[PositionStore] = None,
        notifier=None,
        transport_factory: Optional[Callable[[EnvironmentProfile], Any]] = None,
        stream_connect: Optional[Callable[..., Any]] = None,
    ):
        self.settings = settings or BotSettings.from_config()
        self.store = store or build_store(self.settings)
        self.notifier = notifier or alerts.alert_webhook
        self._transport_factory = transport_factory or self._default_transport
        self._stream_connect = stream_connect

        self.environments = EnvironmentManager(self.settings)
        self.risk_manager = RiskManager.from_settings(self.settings)
        self.symbol_filter = SymbolFilter.from_settings(self.settings)
        self.simulator = PaperTradingSimulator(quote_asset=self.settings.trading.quote_asset)

        self.transport = None
        self.safety_policy = None
        self.gateway: Optional[OrderGateway] = None
        self.market_data: Optional[MarketDataManager] = None
        self.positions: Optional[PositionManager] = None

        self.processed: Set[str] = set()
        self.running = False
        self.paused = False
        self._tasks: List[asyncio.Task] = []
        self._switch_lock = asyncio.Lock()
        self._stopped = asyncio.Event()

    def _default_transport(self, profile: EnvironmentProfile) -> BinanceTransport:
        rest = BinanceRESTClient(
            profile.base_url,
            profile.api_key,
            profile.api_secret,
            settings=self.settings.exchange,
            on_fatal=self._on_fatal,
        )
        return BinanceTransport(rest)

    def _build_components(self, profile: EnvironmentProfile) -> None:
        trading = self.settings.trading
        stream = self.settings.stream
        self.transport = self._transport_factory(profile)
        self.safety_policy = self.environments.build_safety_policy()
        self.gateway = OrderGateway(
            self.transport,
            quote_asset=trading.quote_asset,
            simulation_mode=trading.simulation_mode,
            simulator=self.simulator,
            safety_policy=self.safety_policy,
            symbol_cache_ttl_s=self.settings.exchange.symbol_cache_ttl_s,
        )
        monitor_kwargs = {'connect': self._stream_connect} if self._stream_connect else {}
        monitor = MarketStreamMonitor(profile.stream_url, stream, **monitor_kwargs)
        poller = ListingPoller(self.transport, stream)
        self.market_data = MarketDataManager(self.transport, monitor, poller, self.symbol_filter, stream)
        self.market_data.register_handlers(delisted=self._on_delisted, fallback=self._on_fallback)
        self.positions = PositionManager(
            self.gateway,
            self.risk_manager,
            self.store,
            self.settings,
            profile,
            notifier=self.notifier,
            safety_policy=self.safety_policy,
        )
        logger.info(
            "Components built for %s (simulation=%s, safety=%s)",
            profile.display_name,
            trading.simulation_mode,
            self.safety_policy is not None,
        )

    async def start(self):
        """Activate the configured environment and launch the background loops.

        Raises ConfigurationError when no valid environment can be activated.
        """
        profile = self.environments.activate()
        await self.store.initialize()
        self._build_components(profile)
        await self.positions.load_active_positions()
        await self.positions.refresh_balance(force=True)
        self.running = True
        self._stopped.clear()
        await self._start_loops()
        for tip in self.environments.recommendations():
            logger.info("Recommendation: %s", tip)
        logger.info("Listing bot started on %s", profile.display_name)

    async def _start_loops(self) -> None:
        await self.market_data.start()
        self._tasks = [
            asyncio.create_task(self._consume_listings()),
            asyncio.create_task(self.positions.run_reconciliation_loop()),
        ]

    async def _stop_loops(self) -> None:
        tasks, self._tasks = self._tasks, []
        await cancel_tasks(tasks)
        if self.positions is not None:
            self.positions.running = False
        if self.market_data is not None:
            await self.market_data.stop()

    async def stop(self):
        if not self.running and not self._tasks:
            return
        self.running = False
        await self._stop_loops()
        if self.gateway is not None:
            await self.gateway.close()
        await self.store.close()
        self.notifier.send(alerts.BOT_STOPPED, {'message': 'Listing bot stopped'})
        drain = getattr(self.notifier, 'drain', None)
        if drain is not None:
            await drain()
        self._stopped.set()
        logger.info("Listing bot stopped")

    async def run(self):
        await self.start()
        waiter = asyncio.create_task(self._stopped.wait())
        await run_tasks_with_cleanup([waiter], cleanup=self.stop)

    async def _consume_listings(self):
        while self.running:
            try:
                event = await self.market_data.next_event()
            except asyncio.CancelledError:
                break
            try:
                await self.handle_listing(event)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Listing handling failed for %s", event.symbol)

    def _required_volume(self, profile: EnvironmentProfile) -> float:
        minimum = self.settings.filters.min_volume_24h
        if not profile.is_real_money:
            return minimum
        # Mainnet doubles the filter and the safety policy requires a deeper book still
        return max(minimum * 2, minimum * self.settings.safety.min_listing_volume_multiplier)

    async def handle_listing(self, listing: ListingEvent) -> Optional[BuyResult]:
        symbol = listing.symbol
        if symbol in self.processed:
            logger.debug("Listing %s already processed", symbol)
            return None
        if len(self.processed) >= self.settings.stream.processed_cache_size:
            self.processed.clear()
        self.processed.add(symbol)

        try:
            await self.store.save_listing(listing.to_dict())
        except Exception as exc:
            logger.error("Failed to persist listing %s: %s", symbol, exc)
        self.notifier.send(alerts.NEW_LISTING, {
            'message': f'New listing {symbol} at {listing.price}',
            'listing': listing.to_dict(),
        })

        profile = self.environments.active
        required = self._required_volume(profile)
        if listing.quote_volume < required:
            logger.info(
                "Skipping %s: quote volume %.0f below %.0f",
                symbol,
                listing.quote_volume,
                required,
            )
            return None
        if self.paused:
            logger.warning("Skipping %s: trading paused", symbol)
            return None

        buy = await self.execute_buy(listing)
        if buy.success:
            await self.set_take_profit_stop_loss(buy)
        else:
            self.notifier.send(alerts.WARNING, {
                'message': f'Buy for {symbol} not executed: {buy.error}',
                'symbol': symbol,
            })
        return buy

    async def execute_buy(self, listing: Union[ListingEvent, Dict[str, Any]]) -> BuyResult:
        if self.positions is None:
            raise ConfigurationError('bot has not been started')
        if not isinstance(listing, ListingEvent):
            listing = ListingEvent.from_ticker(listing['symbol'], listing, source='manual')
        return await self.positions.execute_buy(listing)

    async def set_take_profit_stop_loss(self, buy_result: BuyResult) -> ProtectionResult:
        if self.positions is None:
            raise ConfigurationError('bot has not been started')
        return await self.positions.set_take_profit_stop_loss(buy_result)

    async def switch_environment(self, name: str) -> EnvironmentProfile:
        """Pause, rebuild every exchange-facing component for ``name`` and resume.

        On ConfigurationError the previous environment keeps running untouched.
        """
        async with self._switch_lock:
            errors = self.environments.validate(name)
            if errors:
                logger.error("Environment switch to %s refused: %s", name, '; '.join(errors))
                raise ConfigurationError('; '.join(errors))

            previous = self.environments.active if self.environments.is_active else None
            if previous is not None and previous.name == name:
                return previous
            was_running = self.running
            await self._stop_loops()

            old = (self.transport, self.safety_policy, self.gateway, self.market_data, self.positions)
            try:
                profile = self.environments.switch(name)
                self._build_components(profile)
            except Exception:
                logger.exception("Environment switch to %s failed; restoring %s", name,
                                 previous.name if previous else None)
                if previous is not None:
                    self.environments.switch(previous.name)
                self.transport, self.safety_policy, self.gateway, self.market_data, self.positions = old
                if was_running:
                    await self._start_loops()
                raise

            old_gateway, old_positions = old[2], old[4]
            if old_positions is not None and old_positions.positions:
                logger.warning(
                    "%s positions on %s stay open and are reconciled again after switching back",
                    len(old_positions.positions),
                    previous.name,
                )
            if old_gateway is not None:
                await old_gateway.close()
            await self.positions.load_active_positions()
            await self.positions.refresh_balance(force=True)
            self.paused = False
            if was_running:
                await self._start_loops()

        self.notifier.send(alerts.ENVIRONMENT_SWITCHED, {
            'message': f'Environment switched to {profile.display_name}',
            'from': previous.name if previous else None,
            'to': profile.name,
            'is_real_money': profile.is_real_money,
        })
        return profile

    async def _on_fatal(self, error: ExchangeError) -> None:
        self.paused = True
        metrics.record_api_error('fatal')
        logger.critical("Exchange client unhealthy, new entries paused: %s", error)
        self.notifier.send(alerts.ERROR, {
            'message': f'Exchange client unhealthy, trading paused: {error.msg or error}',
            'status': error.status,
            'code': error.code,
        })

    async def _on_delisted(self, payload: Dict[str, Any]) -> None:
        symbol = payload.get('symbol')
        self.processed.discard(symbol)
        if self.positions is not None and symbol in self.positions.positions:
            logger.error("Open position %s was delisted", symbol)
        self.notifier.send(alerts.WARNING, {'message': f'{symbol} delisted', 'symbol': symbol})

    async def _on_fallback(self, payload: Dict[str, Any]) -> None:
        self.notifier.send(alerts.WARNING, {
            'message': f"Market stream unavailable, polling instead ({payload.get('reason')})",
        })

    def get_status(self) -> Dict[str, Any]:
        rest = getattr(self.transport, 'rest', None)
        return {
            'running': self.running,
            'paused': self.paused,
            'environment': self.environments.info(),
            'market_data': self.market_data.status() if self.market_data else None,
            'positions': self.positions.status() if self.positions else None,
            'exchange': {
                'healthy': getattr(rest, 'healthy', True),
                'weight_remaining': rest.budget.remaining() if rest is not None else None,
            },
            'safety': self.safety_policy.report() if self.safety_policy else None,
            'processed_listings': len(self.processed),
        }


async def main():
    settings = BotSettings.from_config()
    start_metrics_server(int(settings.monitoring.get('prometheus_port', 9090)))
    bot = ListingBot(settings)
    try:
        await bot.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Listing bot shutting down on interrupt")
        await bot.stop()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
