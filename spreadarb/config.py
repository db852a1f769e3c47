# spreadarb/config.py
import copy
from decimal import Decimal
from typing import Any, Dict, Optional

import yaml

from .decimals import to_decimal

DEFAULTS: Dict[str, Any] = {
    'system': {
        'log_level': 'INFO',
        'environment': 'live',
        'interactive': False,
        'tick_interval_seconds': 3,
        'initial_delay_seconds': 5,
        'state_dir': '.arbitrader',
        'network_timeout_ms': 10000,
    },
    'trading': {
        'enabled': True,
        'paper': True,
        'entry_spread_target': None,
        'exit_spread_target': None,
        'minimum_profit': None,
        'fixed_exposure': None,
        'trade_timeout_hours': None,
        'trade_blacklist': [],
        'spread_notifications': False,
        'max_neutrality_deviation': '1',
        'order_fill_polls': 100,
    },
    'paper': {
        'auto_fill': False,
        'initial_balance': '100',
    },
    'notifications': {
        'logs': {
            'slow_ticker_warning_ms': 3000,
        },
    },
    'exchanges': {},
}

EXCHANGE_DEFAULTS: Dict[str, Any] = {
    'api_key': '',
    'secret': '',
    'password': '',
    'trading_pairs': [],
    'margin': False,
    'margin_exclude': [],
    'home_currency': 'USD',
    'fee_computation': 'SERVER',
    'trade_fee': None,
    'trade_fee_override': None,
    'margin_fee': None,
    'margin_fee_override': None,
    'streaming': False,
    'ticker': {},
    'amount_step_size': {},
    'options': {},
}

# keys whose values are money/percentages and must never be floats
DECIMAL_TRADING_KEYS = ('entry_spread_target', 'exit_spread_target', 'minimum_profit',
                        'fixed_exposure', 'max_neutrality_deviation')
DECIMAL_EXCHANGE_KEYS = ('trade_fee', 'trade_fee_override', 'margin_fee', 'margin_fee_override')


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def normalize_config(raw: dict) -> dict:
    """Applies defaults and converts numeric settings to Decimal."""
    cfg = _deep_merge(DEFAULTS, raw or {})

    for key in DECIMAL_TRADING_KEYS:
        cfg['trading'][key] = to_decimal(cfg['trading'].get(key))
    cfg['paper']['initial_balance'] = to_decimal(cfg['paper']['initial_balance'])

    exchanges = {}
    for name, ex_cfg in (cfg.get('exchanges') or {}).items():
        ex = _deep_merge(EXCHANGE_DEFAULTS, ex_cfg or {})
        for key in DECIMAL_EXCHANGE_KEYS:
            ex[key] = to_decimal(ex.get(key))
        ex['amount_step_size'] = {pair: to_decimal(step) for pair, step in ex['amount_step_size'].items()}
        ex['fee_computation'] = str(ex['fee_computation']).upper()
        exchanges[name] = ex
    cfg['exchanges'] = exchanges

    return cfg


def validate_config(cfg: dict):
    trading = cfg['trading']

    if len(cfg['exchanges']) < 2:
        raise ValueError("Need at least 2 exchanges for arbitrage.")
    if trading['entry_spread_target'] is None:
        raise ValueError("trading.entry_spread_target must be configured.")
    if trading['exit_spread_target'] is not None and trading['minimum_profit'] is not None:
        raise ValueError("Configure either trading.exit_spread_target or trading.minimum_profit, not both.")
    if trading['fixed_exposure'] is not None and trading['fixed_exposure'] <= Decimal("0"):
        raise ValueError("trading.fixed_exposure must be positive.")

    for name, ex in cfg['exchanges'].items():
        if ex['fee_computation'] not in ('SERVER', 'CLIENT'):
            raise ValueError(f"exchanges.{name}.fee_computation must be SERVER or CLIENT.")
        if not ex['trading_pairs']:
            raise ValueError(f"exchanges.{name}.trading_pairs is empty.")


def load_config(path: str = "config.yaml", raw_config: Optional[dict] = None) -> dict:
    """Reads config.yaml, or takes an already parsed (and possibly narrowed down) copy of it."""
    if raw_config is None:
        with open(path, "r") as f:
            raw_config = yaml.safe_load(f)
    cfg = normalize_config(raw_config)
    validate_config(cfg)
    return cfg
