import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from strategy.execution import OrderGateway
from strategy.simulators.paper import PaperTradingSimulator
from tests.exchange_fixtures import FakeTransport


class CountingTransport(FakeTransport):
    def __init__(self):
        super().__init__()
        self.symbol_lookups = 0

    async def fetch_symbol_info(self, symbol):
        self.symbol_lookups += 1
        return await super().fetch_symbol_info(symbol)


def test_quantity_below_lot_size_rejected_locally():
    async def _run():
        transport = FakeTransport()
        gateway = OrderGateway(transport)
        ticket = await gateway.market_buy('NEWUSDT', 0.05, reference_price=2.0)
        assert not ticket.success
        assert 'LOT_SIZE' in ticket.error
        assert not any(c[0] == 'market' for c in transport.calls)

        ticket = await gateway.market_buy('NEWUSDT', 1.0, reference_price=2.0)
        assert not ticket.success
        assert 'notional' in ticket.error

    asyncio.run(_run())


def test_exchange_rejection_becomes_failed_ticket():
    async def _run():
        transport = FakeTransport()
        transport.fail_limit = True
        gateway = OrderGateway(transport)
        ticket = await gateway.place_limit_sell('NEWUSDT', 5.0, 2.1)
        assert not ticket.success
        assert ticket.error_code == -2010

    asyncio.run(_run())


def test_cancel_of_missing_order_is_benign():
    async def _run():
        transport = FakeTransport()
        gateway = OrderGateway(transport)
        assert await gateway.cancel_order('NEWUSDT', '424242')
        transport.fail_cancel = True
        order = await gateway.place_limit_sell('NEWUSDT', 5.0, 2.1)
        assert not await gateway.cancel_order('NEWUSDT', order.id)
        assert not await gateway.cancel_order('NEWUSDT', 'not-a-number')

    asyncio.run(_run())


def test_symbol_info_cached_until_ttl():
    async def _run():
        now = [0.0]
        transport = CountingTransport()
        gateway = OrderGateway(transport, symbol_cache_ttl_s=300, clock=lambda: now[0])
        await gateway.get_symbol_info('NEWUSDT')
        await gateway.get_symbol_info('NEWUSDT')
        assert transport.symbol_lookups == 1
        now[0] = 301
        await gateway.get_symbol_info('NEWUSDT')
        assert transport.symbol_lookups == 2

    asyncio.run(_run())


def test_simulation_mode_never_touches_the_exchange():
    async def _run():
        transport = FakeTransport()
        simulator = PaperTradingSimulator(initial_balance=1000.0)
        gateway = OrderGateway(transport, simulation_mode=True, simulator=simulator)

        buy = await gateway.market_buy('NEWUSDT', 5.0, reference_price=2.0)
        assert buy.success and buy.is_filled
        assert await gateway.get_balance() == pytest.approx(990.0)

        bracket = await gateway.place_oco('NEWUSDT', 5.0, 2.1, 1.94, 1.9206)
        assert bracket.order_list_id is not None
        assert len(await gateway.get_open_orders('NEWUSDT')) == 2

        take_profit = bracket.legs[0]
        simulator.fill(take_profit.id)
        assert (await gateway.get_order('NEWUSDT', take_profit.id)).status == 'FILLED'
        assert (await gateway.get_order('NEWUSDT', bracket.legs[1].id)).status == 'EXPIRED'
        assert await gateway.get_balance() == pytest.approx(1000.5)
        assert not [c for c in transport.calls if c[0] in ('market', 'oco', 'limit', 'stop')]

    asyncio.run(_run())


def test_simulated_stop_fills_when_price_falls_to_trigger():
    async def _run():
        transport = FakeTransport()
        simulator = PaperTradingSimulator(initial_balance=1000.0)
        gateway = OrderGateway(transport, simulation_mode=True, simulator=simulator)
        await gateway.market_buy('NEWUSDT', 5.0, reference_price=2.0)
        bracket = await gateway.place_oco('NEWUSDT', 5.0, 2.1, 1.94, 1.9206)
        take_profit, stop = bracket.legs

        transport.prices['NEWUSDT'] = 1.95
        assert len(await gateway.get_open_orders('NEWUSDT')) == 2

        transport.prices['NEWUSDT'] = 1.93
        assert await gateway.get_open_orders('NEWUSDT') == []
        filled = await gateway.get_order('NEWUSDT', stop.id)
        assert filled.status == 'FILLED'
        assert filled.avg_price == pytest.approx(1.9206)
        assert (await gateway.get_order('NEWUSDT', take_profit.id)).status == 'EXPIRED'
        assert await gateway.get_balance() == pytest.approx(990.0 + 5.0 * 1.9206)

    asyncio.run(_run())
