# hedgearb/config.py
import copy
import os
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    'system': {
        'simulation_mode': True,        # no orders reach a venue
        'environment': 'live',          # 'testnet' switches ccxt sandbox mode on
        'auto_execute': False,
        'log_level': 'INFO',
    },
    'scanner': {
        'instruments': ['ADA/USDT', 'DOT/USDT', 'LINK/USDT', 'AVAX/USDT', 'XRP/USDT', 'DOGE/USDT'],
        'interval_seconds': 5.0,
        'activation_threshold_pct': 0.5,
        'funding_periods_per_day': 3,
        'min_lifetime_seconds': 0.0,    # auto_execute waits until a spread has lived this long
        'history_size': 500,
    },
    'risk': {
        'min_spread_pct': 0.6,
        'max_spread_pct': 5.0,
        'max_daily_volume_usd': 2000.0,
        'max_position_size_usd': 500.0,
        'max_consecutive_failures': 3,
        'max_slippage_pct': None,
    },
    'trading': {
        'position_size_usd': 100.0,
        'futures_leverage': 1,
    },
    'execution': {
        'order_timeout_seconds': 2.0,
        'simulate_delay_seconds': 0.0,
    },
    'positions': {
        'auto_close_enabled': True,
        'check_interval_seconds': 60.0,
        'take_profit_pct': 0.4,
        'stop_loss_pct': -0.2,
        'max_position_hours': 24.0,
        'max_funding_cost_pct': 0.15,
        'closing_fees_pct': 0.16,
        'funding_interval_hours': 8.0,
        'history_limit': 500,           # closed and resolved failed records kept on disk
    },
    'performance': {
        'quote_timeout_seconds': 3.0,
        'max_concurrent_requests': 10,
        'network_timeout_ms': 3000,
    },
    'balance': {
        'cache_ttl_seconds': 30.0,
        'quote_currency': 'USDT',
    },
    'fees': {
        'spot_taker_fee_pct': 0.1,
        'futures_taker_fee_pct': 0.06,
    },
    'exchanges': {},
    'storage': {
        'directory': 'data',
    },
    'audit': {
        'trade_log': 'data/trades.csv',
    },
    'notifications': {
        'telegram': {
            'enabled': False,
            'token': '',
            'chat_id': '',
        },
    },
}


def deep_merge(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Returns a new dict with override merged recursively over base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Loads the YAML config and layers it over DEFAULT_CONFIG.
    A missing file is not an error: the defaults alone run in simulation mode.
    """
    path = path or os.environ.get('HEDGEARB_CONFIG', 'config.yaml')
    file_conf: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, 'r') as f:
            file_conf = yaml.safe_load(f) or {}
    return deep_merge(deep_merge(DEFAULT_CONFIG, file_conf), overrides)


def venue_fee_pct(config: Dict[str, Any], venue: str, market: str) -> float:
    """Taker fee in percent for a venue's market, falling back to the global fee table."""
    key = f'{market}_taker_fee_pct'
    venue_conf = config['exchanges'].get(venue) or {}
    if venue_conf.get(key) is not None:
        return float(venue_conf[key])
    return float(config['fees'][key])
