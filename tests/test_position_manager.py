import asyncio
import sys
import time

sys.path.insert(0, '.')

import pytest

from ingest.listing_diff import ListingEvent
from monitoring.order_auditor import OrderAuditor
from orchestration.environment import EnvironmentManager
from orchestration.persistence import InMemoryPositionStore
from risk.position_sizer import RiskManager
from risk.safety_policy import SafetyPolicy
from strategy.execution import OrderGateway
from strategy.simulators.paper import PaperTradingSimulator
from strategy.position_manager import CloseReason, PositionManager, PositionStatus, ReconciliationError
from tests.exchange_fixtures import FakeTransport, RecordingNotifier, make_settings, symbol_info


def _manager(transport=None, settings=None, env='testnet', safety=None):
    settings = settings or make_settings()
    transport = transport or FakeTransport()
    profile = EnvironmentManager(settings).switch(env)
    gateway = OrderGateway(transport, safety_policy=safety)
    store = InMemoryPositionStore()
    notifier = RecordingNotifier()
    manager = PositionManager(
        gateway,
        RiskManager.from_settings(settings),
        store,
        settings,
        profile,
        notifier=notifier,
        safety_policy=safety,
    )
    return manager, transport, store, notifier


def _listing(symbol='NEWUSDT', price=2.0, change_pct=10.0, quote_volume=5_000_000.0):
    return ListingEvent(
        symbol=symbol,
        price=price,
        volume=quote_volume / price,
        quote_volume=quote_volume,
        price_change=price * change_pct / 100,
        price_change_percent=change_pct,
        detected_at=time.time(),
    )


def _stored(store, position):
    return store.positions[(position.symbol, position.order_id)]


def test_buy_then_oco_protection():
    async def _run():
        manager, transport, store, notifier = _manager()
        buy = await manager.execute_buy(_listing())
        assert buy.success
        position = buy.position
        assert position.quantity == pytest.approx(5.0)
        assert position.entry_price == pytest.approx(2.0)
        assert _stored(store, position)['status'] == 'OPEN'

        result = await manager.set_take_profit_stop_loss(buy)
        assert result.success
        assert result.method == 'OCO'
        assert result.take_profit_price == pytest.approx(2.1)
        assert result.stop_loss_price == pytest.approx(1.94)
        assert position.is_protected
        assert position.order_list_id is not None

        oco = [c for c in transport.calls if c[0] == 'oco'][0]
        # stop-limit sits one percent under the trigger, floored to the tick
        assert oco[6] == pytest.approx(1.9206)
        tp_leg = transport.orders[int(position.take_profit_order_id)]
        assert tp_leg.type == 'LIMIT_MAKER'
        assert 'buy_executed' in notifier.types()

    asyncio.run(_run())


def test_oco_rejection_falls_back_to_separate_orders():
    async def _run():
        transport = FakeTransport()
        transport.fail_oco = True
        manager, transport, _, _ = _manager(transport)
        buy = await manager.execute_buy(_listing())
        result = await manager.set_take_profit_stop_loss(buy)

        assert result.success
        assert result.method == 'SEPARATE'
        kinds = [c[0] for c in transport.calls]
        assert kinds.index('oco') < kinds.index('limit') < kinds.index('stop')
        assert len(transport.open_orders()) == 2
        assert buy.position.order_list_id is None

    asyncio.run(_run())


def test_stop_loss_failure_never_leaves_lone_take_profit():
    async def _run():
        settings = make_settings(trading={'use_oco': False})
        transport = FakeTransport()
        transport.fail_stop = True
        manager, transport, store, notifier = _manager(transport, settings)
        buy = await manager.execute_buy(_listing())
        result = await manager.set_take_profit_stop_loss(buy)

        assert not result.success
        assert not buy.position.is_protected
        assert buy.position.protection_order_ids == []
        # Two attempts, each take-profit cancelled after the stop was rejected
        limits = [o for o in transport.orders.values() if o.type == 'LIMIT']
        assert len(limits) == 2
        assert all(o.status == 'CANCELED' for o in limits)
        assert transport.open_orders() == []
        assert any(e['type'] == 'PROTECTION_ERROR' for e in store.errors)
        assert 'error' in notifier.types()

    asyncio.run(_run())


def test_reconcile_closes_on_take_profit_fill():
    async def _run():
        manager, transport, store, notifier = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        position = buy.position
        transport.fill(position.take_profit_order_id, 2.1)

        closed = await manager.reconcile()
        assert closed == [position]
        assert position.status is PositionStatus.CLOSED
        assert position.close_reason is CloseReason.TAKE_PROFIT
        assert position.pnl == pytest.approx(0.5)
        assert position.pnl_percent == pytest.approx(5.0)
        assert 'NEWUSDT' not in manager.positions
        assert _stored(store, position)['status'] == 'CLOSED'
        assert 'position_closed' in notifier.types()

        # Closed positions are final
        assert await manager.reconcile() == []
        assert await manager.close_position('NEWUSDT') is None

    asyncio.run(_run())


def test_reconcile_stop_fill_cancels_separate_take_profit():
    async def _run():
        settings = make_settings(trading={'use_oco': False})
        manager, transport, _, _ = _manager(settings=settings)
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        position = buy.position
        tp_id = position.take_profit_order_id
        transport.fill(position.stop_loss_order_id, 1.9206)

        closed = await manager.reconcile()
        assert closed == [position]
        assert position.close_reason is CloseReason.STOP_LOSS
        assert position.pnl < 0
        assert transport.orders[int(tp_id)].status == 'CANCELED'

    asyncio.run(_run())


def test_reconcile_read_failure_keeps_position_open():
    async def _run():
        manager, transport, store, _ = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        transport.fail_open_orders = True

        with pytest.raises(ReconciliationError):
            await manager.reconcile_position('NEWUSDT')
        assert await manager.reconcile() == []
        assert manager.positions['NEWUSDT'].is_open
        assert any(e['type'] == 'RECONCILIATION_ERROR' for e in store.errors)

    asyncio.run(_run())


def test_protection_cancelled_externally_marks_unprotected():
    async def _run():
        manager, transport, store, notifier = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        for order in transport.open_orders():
            order.status = 'CANCELED'

        assert await manager.reconcile() == []
        position = manager.positions['NEWUSDT']
        assert position.is_open
        assert not position.is_protected
        assert any(e['type'] == 'PROTECTION_LOST' for e in store.errors)
        assert 'warning' in notifier.types()

    asyncio.run(_run())


def test_duplicate_buy_rejected():
    async def _run():
        manager, transport, _, _ = _manager()
        first = await manager.execute_buy(_listing())
        second = await manager.execute_buy(_listing())
        assert first.success
        assert not second.success
        assert 'already open' in second.error
        assert len([c for c in transport.calls if c[0] == 'market']) == 1

    asyncio.run(_run())


def test_max_positions_respected():
    async def _run():
        settings = make_settings(trading={'max_positions': 1})
        transport = FakeTransport(prices={'NEWUSDT': 2.0, 'ALTUSDT': 1.0})
        transport.symbols['ALTUSDT'] = symbol_info('ALTUSDT', 'ALT')
        manager, transport, _, _ = _manager(transport, settings)
        assert (await manager.execute_buy(_listing())).success
        result = await manager.execute_buy(_listing('ALTUSDT', price=1.0))
        assert not result.success
        assert 'max positions' in result.error

    asyncio.run(_run())


def test_high_risk_listing_blocked_on_real_money():
    async def _run():
        manager, transport, store, _ = _manager(env='mainnet')
        result = await manager.execute_buy(_listing(change_pct=80.0))
        assert not result.success
        assert 'high-risk' in result.error
        assert not any(c[0] == 'market' for c in transport.calls)
        assert store.errors[-1]['symbol'] == 'NEWUSDT'

    asyncio.run(_run())


def test_safety_policy_blocks_oversized_entry(tmp_path):
    async def _run():
        safety = SafetyPolicy(
            max_order_value=5.0,
            daily_loss_limit=100.0,
            auditor=OrderAuditor(str(tmp_path / 'audit.jsonl'), environment='mainnet'),
        )
        manager, transport, store, _ = _manager(env='mainnet', safety=safety)
        result = await manager.execute_buy(_listing())
        assert not result.success
        assert 'safety policy' in result.error
        assert not any(c[0] == 'market' for c in transport.calls)
        assert safety.auditor.entries('ORDER_BLOCKED')

    asyncio.run(_run())


def test_manual_close_cancels_protection_and_sells():
    async def _run():
        manager, transport, _, _ = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        transport.prices['NEWUSDT'] = 2.2

        position = await manager.close_position('NEWUSDT')
        assert position.close_reason is CloseReason.MANUAL
        assert position.exit_price == pytest.approx(2.2)
        assert transport.open_orders() == []
        sells = [c for c in transport.calls if c[0] == 'market' and c[2] == 'SELL']
        assert len(sells) == 1

    asyncio.run(_run())


def test_open_positions_restored_from_store():
    async def _run():
        manager, _, store, _ = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)

        restored, _, _, _ = _manager()
        restored.store = store
        assert await restored.load_active_positions() == 1
        position = restored.positions['NEWUSDT']
        assert position.is_protected
        assert position.take_profit_order_id == buy.position.take_profit_order_id

    asyncio.run(_run())


def test_close_after_take_profit_fill_records_the_fill():
    async def _run():
        manager, transport, store, _ = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        position = buy.position
        transport.fill(position.take_profit_order_id, 2.1)
        transport.fail_market_sell = True

        closed = await manager.close_position('NEWUSDT')
        assert closed is position
        assert position.close_reason is CloseReason.TAKE_PROFIT
        assert position.exit_price == pytest.approx(2.1)
        assert 'NEWUSDT' not in manager.positions
        assert not any(c[0] == 'market' and c[2] == 'SELL' for c in transport.calls)
        assert _stored(store, position)['status'] == 'CLOSED'

    asyncio.run(_run())


def test_failed_close_restores_protection():
    async def _run():
        manager, transport, store, notifier = _manager()
        buy = await manager.execute_buy(_listing())
        await manager.set_take_profit_stop_loss(buy)
        old_ids = set(buy.position.protection_order_ids)
        transport.fail_market_sell = True

        assert await manager.close_position('NEWUSDT') is None
        position = manager.positions['NEWUSDT']
        assert position.is_open
        assert position.is_protected
        assert not old_ids & set(position.protection_order_ids)
        assert len(transport.open_orders()) == 2
        assert any(e['type'] == 'SELL_ORDER_ERROR' for e in store.errors)
        assert 'error' in notifier.types()

        # Next pass still tracks the restored orders
        transport.fill(position.stop_loss_order_id, 1.9206)
        transport.fail_market_sell = False
        assert await manager.reconcile() == [position]
        assert position.close_reason is CloseReason.STOP_LOSS

    asyncio.run(_run())


def test_simulated_position_closes_when_price_reaches_take_profit():
    async def _run():
        settings = make_settings(app={'simulation_mode': True})
        transport = FakeTransport()
        simulator = PaperTradingSimulator(initial_balance=1000.0)
        gateway = OrderGateway(transport, simulation_mode=True, simulator=simulator)
        manager = PositionManager(
            gateway,
            RiskManager.from_settings(settings),
            InMemoryPositionStore(),
            settings,
            EnvironmentManager(settings).switch('testnet'),
            notifier=RecordingNotifier(),
        )
        buy = await manager.execute_buy(_listing())
        assert (await manager.set_take_profit_stop_loss(buy)).method == 'OCO'
        assert await manager.reconcile() == []

        transport.prices['NEWUSDT'] = 2.15
        assert await manager.reconcile() == [buy.position]
        assert buy.position.close_reason is CloseReason.TAKE_PROFIT
        assert buy.position.exit_price == pytest.approx(2.1)
        assert manager.balance == pytest.approx(1000.5)
        assert not any(c[0] in ('market', 'oco', 'limit', 'stop') for c in transport.calls)

    asyncio.run(_run())
