import asyncio
import json
import sys

sys.path.insert(0, '.')

from config.settings import StreamSettings
from ingest.websocket_client import MarketStreamMonitor, MonitorState


class FakeWebSocket:
    def __init__(self, frames=None, hang=False):
        self.frames = list(frames or [])
        self.hang = hang
        self.closed = False

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if self.hang:
            await asyncio.Event().wait()
        raise ConnectionResetError('stream closed')

    async def ping(self):
        future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return future

    async def close(self):
        self.closed = True


class ScriptedConnect:
    """Plays back sockets or connect errors in order, then refuses every further attempt."""

    def __init__(self, script=()):
        self.script = list(script)
        self.urls = []

    async def __call__(self, url, **kwargs):
        self.urls.append(url)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        raise ConnectionRefusedError('refused')


class RecordingMonitor(MarketStreamMonitor):
    def __init__(self, *args, **kwargs):
        self.states = []
        super().__init__(*args, **kwargs)

    def _set_state(self, state):
        self.states.append(state)
        super()._set_state(state)


def _monitor(connect, **overrides):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    settings = StreamSettings(reconnect_max_attempts=3, reconnect_delay_s=5.0, **overrides)
    monitor = RecordingMonitor('wss://testnet.binance.vision/ws', settings, connect=connect, sleep=fake_sleep)
    events = []

    async def on_terminated(reason):
        events.append(('terminated', reason))

    async def on_connected(_):
        events.append(('connected', None))

    async def on_tickers(tickers):
        events.append(('tickers', tickers))

    monitor.register_handler('terminated', on_terminated)
    monitor.register_handler('connected', on_connected)
    monitor.register_handler('tickers', on_tickers)
    return monitor, sleeps, events


def test_reconnect_delays_grow_then_terminate():
    async def _run():
        connect = ScriptedConnect()
        monitor, sleeps, events = _monitor(connect)
        await monitor.run()

        assert monitor.url.endswith('/!miniTicker@arr')
        assert len(connect.urls) == 4
        assert len(sleeps) == 3
        for attempt, delay in enumerate(sleeps, start=1):
            assert 5.0 * attempt <= delay <= 5.0 * attempt + 0.5
        assert monitor.state is MonitorState.TERMINATED
        assert events == [('terminated', 'reconnect_exhausted')]

    asyncio.run(_run())


def test_batches_delivered_and_attempts_reset_on_connect():
    async def _run():
        batch = json.dumps([
            {'s': 'BTCUSDT', 'c': '50000', 'o': '49000', 'v': '1', 'q': '50000'},
            {'s': 'NEWUSDT', 'c': '1.5', 'o': '1.0', 'v': '10', 'q': '15'},
        ])
        connect = ScriptedConnect([ConnectionRefusedError('first try'), FakeWebSocket([batch, 'not json'])])
        monitor, sleeps, events = _monitor(connect)
        await monitor.run()

        kinds = [kind for kind, _ in events]
        assert kinds == ['connected', 'tickers', 'terminated']
        assert set(events[1][1]) == {'BTCUSDT', 'NEWUSDT'}
        assert monitor.messages_received == 2
        # The successful connect reset the budget, so three more retries followed it
        assert len(sleeps) == 1 + 3
        assert 5.0 <= sleeps[1] <= 5.5
        assert MonitorState.CONNECTED in monitor.states

    asyncio.run(_run())


def test_silent_stream_marked_degraded():
    async def _run():
        connect = ScriptedConnect([FakeWebSocket(hang=True)])
        monitor, _, events = _monitor(connect, heartbeat_timeout_s=0.05)
        await monitor.run()
        assert MonitorState.DEGRADED in monitor.states
        assert events[-1] == ('terminated', 'reconnect_exhausted')

    asyncio.run(_run())


def test_stop_cancels_pending_reconnect():
    async def _run():
        async def slow_sleep(seconds):
            await asyncio.sleep(3600)

        monitor = MarketStreamMonitor(
            'wss://testnet.binance.vision/ws',
            StreamSettings(),
            connect=ScriptedConnect(),
            sleep=slow_sleep,
        )
        await monitor.start()
        await asyncio.sleep(0.01)
        await monitor.stop()
        assert not monitor.running
        assert monitor.state is MonitorState.DISCONNECTED

    asyncio.run(_run())
