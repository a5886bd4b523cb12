import asyncio
import hashlib
import hmac
import sys
from urllib.parse import parse_qs, urlsplit

sys.path.insert(0, '.')

import aiohttp
import pytest

from config.settings import ExchangeSettings
from ingest.binance_rest import (
    BinanceRESTClient,
    FatalExchangeError,
    OrderRejectedError,
    TransientExchangeError,
    endpoint_weight,
)
from ingest.weight_budget import WeightBudget
from strategy.transports.binance import BinanceTransport


JSON = {'Content-Type': 'application/json'}


class ScriptedClient(BinanceRESTClient):
    """REST client whose wire layer replays canned responses."""

    def __init__(self, responses, api_key='key', api_secret='secret', **kwargs):
        self.sleeps = []
        self.requests = []
        self.responses = list(responses)

        async def _sleep(seconds):
            self.sleeps.append(seconds)

        super().__init__(
            'https://testnet.binance.vision/api',
            api_key,
            api_secret,
            settings=ExchangeSettings(retry_max_attempts=3, retry_delay_s=1.0, retry_backoff=2.0),
            sleep=_sleep,
            **kwargs
        )

    async def _send(self, method, url, headers):
        self.requests.append((method, url, headers))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_server_error_retried_with_backoff():
    async def _run():
        client = ScriptedClient([
            (503, JSON, {'code': -1, 'msg': 'unavailable'}, ''),
            (502, JSON, {}, ''),
            (200, {'X-MBX-USED-WEIGHT-1M': '55'}, {'serverTime': 1}, ''),
        ])
        payload = await client.public_request('/v3/time')
        assert payload == {'serverTime': 1}
        assert len(client.requests) == 3
        assert 1.0 <= client.sleeps[0] <= 1.1
        assert 2.0 <= client.sleeps[1] <= 2.2
        assert client.budget.current_weight >= 55

    asyncio.run(_run())


def test_network_error_is_transient():
    async def _run():
        client = ScriptedClient([
            aiohttp.ClientConnectionError('reset by peer'),
            (200, JSON, [], ''),
        ])
        assert await client.public_request('/v3/ticker/24hr') == []
        assert len(client.requests) == 2

    asyncio.run(_run())


def test_rate_limit_honours_retry_after():
    async def _run():
        client = ScriptedClient([
            (429, {'Retry-After': '7'}, {'code': -1003, 'msg': 'Too many requests'}, ''),
            (200, JSON, {'ok': True}, ''),
        ])
        assert await client.public_request('/v3/exchangeInfo') == {'ok': True}
        assert client.sleeps == [7.0]

    asyncio.run(_run())


def test_rate_limit_consumes_attempts():
    async def _run():
        client = ScriptedClient([
            (429, {'Retry-After': '1'}, {'code': -1003, 'msg': 'Too many requests'}, ''),
        ] * 3)
        with pytest.raises(TransientExchangeError) as exc_info:
            await client.public_request('/v3/exchangeInfo')
        assert exc_info.value.status == 429
        assert len(client.requests) == 3
        assert client.sleeps == [1.0, 1.0]

    asyncio.run(_run())


def test_ip_ban_disables_client():
    async def _run():
        fatal = []

        async def on_fatal(error):
            fatal.append(error)

        client = ScriptedClient([(418, JSON, {'code': -1003, 'msg': 'banned'}, '')], on_fatal=on_fatal)
        with pytest.raises(FatalExchangeError):
            await client.public_request('/v3/ticker/price', {'symbol': 'BTCUSDT'})
        assert not client.healthy
        assert len(fatal) == 1 and fatal[0].status == 418
        assert client.sleeps == []

        with pytest.raises(FatalExchangeError):
            await client.public_request('/v3/ticker/price', {'symbol': 'BTCUSDT'})
        assert len(client.requests) == 1

    asyncio.run(_run())


def test_bad_credentials_are_fatal_without_retry():
    async def _run():
        client = ScriptedClient([(401, JSON, {'code': -2015, 'msg': 'Invalid API-key'}, '')])
        with pytest.raises(FatalExchangeError) as exc_info:
            await client.signed_request('/v3/account')
        assert exc_info.value.code == -2015
        assert len(client.requests) == 1

    asyncio.run(_run())


def test_business_rejection_keeps_exchange_code():
    async def _run():
        client = ScriptedClient([
            (400, JSON, {'code': -2010, 'msg': 'Account has insufficient balance for requested action.'}, ''),
        ])
        with pytest.raises(OrderRejectedError) as exc_info:
            await client.signed_request('/v3/order', {'symbol': 'NEWUSDT', 'side': 'BUY'}, method='POST')
        assert exc_info.value.code == -2010
        assert len(client.requests) == 1
        assert client.sleeps == []

    asyncio.run(_run())


def test_signed_request_carries_valid_signature():
    async def _run():
        client = ScriptedClient([(200, JSON, {'balances': []}, '')], api_key='my-key', api_secret='my-secret')
        await client.signed_request('/v3/account')
        method, url, headers = client.requests[0]
        assert method == 'GET'
        assert headers['X-MBX-APIKEY'] == 'my-key'

        query = url.split('?', 1)[1]
        unsigned, signature = query.rsplit('&signature=', 1)
        assert 'timestamp=' in unsigned and 'recvWindow=5000' in unsigned
        expected = hmac.new(b'my-secret', unsigned.encode('utf-8'), hashlib.sha256).hexdigest()
        assert signature == expected

    asyncio.run(_run())


def test_signed_request_requires_credentials():
    async def _run():
        client = ScriptedClient([], api_key=None, api_secret=None)
        with pytest.raises(FatalExchangeError):
            await client.signed_request('/v3/account')
        assert client.requests == []

    asyncio.run(_run())


def test_endpoint_weights():
    assert endpoint_weight('GET', '/v3/ticker/24hr') == 40
    assert endpoint_weight('GET', '/v3/ticker/24hr', {'symbol': 'BTCUSDT'}) == 2
    assert endpoint_weight('GET', '/v3/order', signed=True) == 2
    assert endpoint_weight('POST', '/v3/order', signed=True) == 1
    assert endpoint_weight('GET', '/v3/unknown', signed=True) == 10


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def test_timestamp_taken_after_weight_wait():
    async def _run():
        now = [1000.0]

        async def _advance(seconds):
            now[0] += seconds

        budget = WeightBudget(1200, 60.0, clock=lambda: now[0], sleep=_advance)
        budget.current_weight = 1195
        client = ScriptedClient([(200, JSON, {'balances': []}, '')], budget=budget, clock=lambda: now[0])
        await client.signed_request('/v3/account')

        assert budget.waits == 1
        assert now[0] == pytest.approx(1060.0)
        assert int(_query(client.requests[0][1])['timestamp']) == 1060000

    asyncio.run(_run())


ORDER = {
    'symbol': 'NEWUSDT', 'orderId': 42, 'clientOrderId': 'lsnp-abc', 'side': 'BUY', 'type': 'MARKET',
    'status': 'FILLED', 'origQty': '5', 'executedQty': '5', 'cummulativeQuoteQty': '10',
}


def test_timed_out_order_found_by_client_id_is_not_resubmitted():
    async def _run():
        client = ScriptedClient([
            aiohttp.ServerTimeoutError('read timeout'),
            (200, JSON, ORDER, ''),
        ])
        params = {'symbol': 'NEWUSDT', 'side': 'BUY', 'type': 'MARKET', 'quantity': '5',
                  'newClientOrderId': 'lsnp-abc'}
        assert await client.signed_request('/v3/order', params, method='POST') == ORDER

        methods = [method for method, _, _ in client.requests]
        assert methods == ['POST', 'GET']
        lookup = _query(client.requests[1][1])
        assert lookup['origClientOrderId'] == 'lsnp-abc'
        assert lookup['symbol'] == 'NEWUSDT'
        assert client.sleeps == []

    asyncio.run(_run())


def test_order_missing_after_server_error_is_resubmitted():
    async def _run():
        client = ScriptedClient([
            (503, JSON, {'code': -1, 'msg': 'execution status unknown'}, ''),
            (400, JSON, {'code': -2013, 'msg': 'Order does not exist.'}, ''),
            (200, JSON, ORDER, ''),
        ])
        params = {'symbol': 'NEWUSDT', 'side': 'BUY', 'type': 'MARKET', 'quantity': '5',
                  'newClientOrderId': 'lsnp-abc'}
        assert await client.signed_request('/v3/order', params, method='POST') == ORDER
        methods = [method for method, _, _ in client.requests]
        assert methods == ['POST', 'GET', 'POST']
        assert _query(client.requests[2][1])['newClientOrderId'] == 'lsnp-abc'

    asyncio.run(_run())


def test_order_without_client_id_never_resubmitted_blindly():
    async def _run():
        client = ScriptedClient([aiohttp.ServerTimeoutError('read timeout')])
        with pytest.raises(TransientExchangeError):
            await client.signed_request('/v3/order', {'symbol': 'NEWUSDT', 'side': 'BUY'}, method='POST')
        assert len(client.requests) == 1

    asyncio.run(_run())


def test_transport_recovers_timed_out_market_order():
    async def _run():
        client = ScriptedClient([
            aiohttp.ServerTimeoutError('read timeout'),
            (200, JSON, ORDER, ''),
        ])
        ticket = await BinanceTransport(client).place_market_order('NEWUSDT', 'BUY', 5.0)
        sent = _query(client.requests[0][1])
        assert sent['newClientOrderId'].startswith('lsnp-')
        assert _query(client.requests[1][1])['origClientOrderId'] == sent['newClientOrderId']
        assert ticket.status == 'FILLED'
        assert ticket.executed_qty == pytest.approx(5.0)
        assert ticket.avg_price == pytest.approx(2.0)

    asyncio.run(_run())


def test_transport_recovered_oco_has_typed_legs():
    async def _run():
        order_list = {
            'orderListId': 7, 'listClientOrderId': 'lsnp-list', 'symbol': 'NEWUSDT', 'listOrderStatus': 'EXECUTING',
            'orders': [
                {'symbol': 'NEWUSDT', 'orderId': 11, 'clientOrderId': 'a'},
                {'symbol': 'NEWUSDT', 'orderId': 12, 'clientOrderId': 'b'},
            ],
        }
        stop = {'symbol': 'NEWUSDT', 'orderId': 11, 'orderListId': 7, 'side': 'SELL', 'type': 'STOP_LOSS_LIMIT',
                'status': 'NEW', 'origQty': '5', 'price': '1.9206', 'stopPrice': '1.94'}
        limit = {'symbol': 'NEWUSDT', 'orderId': 12, 'orderListId': 7, 'side': 'SELL', 'type': 'LIMIT_MAKER',
                 'status': 'NEW', 'origQty': '5', 'price': '2.1', 'stopPrice': '0'}
        client = ScriptedClient([
            (502, JSON, {}, ''),
            (200, JSON, order_list, ''),
            (200, JSON, stop, ''),
            (200, JSON, limit, ''),
        ])
        ticket = await BinanceTransport(client).place_oco_order('NEWUSDT', 'SELL', 5.0, 2.1, 1.94, 1.9206)

        assert urlsplit(client.requests[1][1]).path.endswith('/v3/orderList')
        assert 'symbol' not in _query(client.requests[1][1])
        assert ticket.order_list_id == 7
        assert [leg.type for leg in ticket.legs] == ['STOP_LOSS_LIMIT', 'LIMIT_MAKER']
        assert ticket.legs[0].stop_price == pytest.approx(1.94)
        assert ticket.legs[1].stop_price is None

    asyncio.run(_run())
