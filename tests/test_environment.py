import sys

sys.path.insert(0, '.')

import pytest

from config.settings import ConfigurationError
from monitoring.order_auditor import OrderAuditor
from orchestration.environment import EnvironmentManager
from tests.exchange_fixtures import make_settings


def test_default_environment_activated():
    manager = EnvironmentManager(make_settings())
    with pytest.raises(ConfigurationError):
        manager.active
    profile = manager.activate()
    assert profile.name == 'testnet'
    assert not profile.is_real_money
    assert manager.active is profile


def test_failed_switch_keeps_previous_profile():
    settings = make_settings(environments={
        'mainnet': {
            'is_real_money': True,
            'base_url': 'https://api.binance.com/api',
            'stream_url': 'wss://stream.binance.com:9443/ws',
            'api_key': 'short',
            'api_secret': None,
        },
    })
    manager = EnvironmentManager(settings)
    manager.activate()
    errors = manager.validate('mainnet')
    assert any('api_key shorter' in e for e in errors)
    assert any('missing api_secret' in e for e in errors)

    with pytest.raises(ConfigurationError):
        manager.switch('mainnet')
    assert manager.active.name == 'testnet'
    with pytest.raises(ConfigurationError):
        manager.switch('paper')
    assert manager.active.name == 'testnet'


def test_insecure_endpoints_rejected():
    settings = make_settings(environments={
        'testnet': {
            'base_url': 'http://testnet.binance.vision/api',
            'stream_url': 'ws://testnet.binance.vision/ws',
            'api_key': 'k' * 64,
            'api_secret': 's' * 64,
        },
    })
    errors = EnvironmentManager(settings).validate('testnet')
    assert len(errors) == 2


def test_simulation_mode_needs_no_credentials():
    settings = make_settings(
        app={'environment': 'testnet', 'simulation_mode': True},
        environments={'testnet': {
            'base_url': 'https://testnet.binance.vision/api',
            'stream_url': 'wss://testnet.binance.vision/ws',
        }},
    )
    manager = EnvironmentManager(settings)
    assert manager.validate('testnet') == []
    assert manager.activate().name == 'testnet'


def test_safety_policy_only_for_real_money(tmp_path):
    manager = EnvironmentManager(make_settings())
    manager.activate()
    assert manager.build_safety_policy() is None

    profile = manager.switch('mainnet')
    assert profile.is_real_money
    assert profile.max_order_value == 100.0
    policy = manager.build_safety_policy(OrderAuditor(str(tmp_path / 'audit.jsonl')))
    assert policy is not None
    assert policy.max_order_value == 100.0


def test_info_never_exposes_secrets():
    manager = EnvironmentManager(make_settings())
    manager.activate()
    info = manager.info()
    assert info['active']['name'] == 'testnet'
    assert info['available']['mainnet']['valid']
    assert 'k' * 64 not in repr(info)
    assert 's' * 64 not in repr(manager.active)
    assert manager.recommendations()
