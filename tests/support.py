# ========================
# tests/support.py
# ========================

"""Shared fixtures for the pipeline tests."""

import csv
import os
import sys
import time
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.utils.config import Config

TRADE_HEADER = ['trade_id', 'client_id', 'instrument', 'quantity', 'unit_price', 'trade_date']
CLIENT_HEADER = ['client_id', 'client_name', 'region']

SCENARIO_TRADES = [
    ['1', '101', 'AAPL', '100', '150', '2024-01-15'],
    ['2', '102', 'MSFT', '200', '250', '2024-01-16'],
    ['3', '103', 'GOOG', '150', '1200', '2024-01-17'],
]

SCENARIO_CLIENTS = [
    ['101', 'Alpha', 'NA'],
    ['102', 'Beta', 'EU'],
    ['103', 'Gamma', 'Asia'],
]


def write_csv(path, header, rows):
    """Write a CSV source file and return its path as a string."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        if header is not None:
            writer.writerow(header)
        writer.writerows(rows)
    return str(path)


def make_config(base_dir, **overrides):
    """Config rooted in a temporary directory, with fast retries."""
    base_dir = Path(base_dir)
    settings = {
        'pipeline_name': 'test_pipeline',
        'pipeline_data_root': str(base_dir / 'layers'),
        'trades_source': str(base_dir / 'incoming' / 'trades.csv'),
        'clients_source': str(base_dir / 'incoming' / 'clients.csv'),
        'run_history_file': str(base_dir / 'run_history.json'),
        'log_dir': str(base_dir / 'logs'),
        'run_max_retries': 0,
        'run_retry_base_delay_seconds': 0.0,
        'run_retry_max_delay_seconds': 0.0,
        'run_retry_jitter': 0.0,
        'schedule_interval_minutes': None,
        'schedule_time_of_day': None,
        'schedule_cron': None,
    }
    settings.update(overrides)
    return Config(settings)


def write_scenario_sources(config, trades=None, clients=None):
    """Write trade and client sources for a config."""
    write_csv(config.TRADES_SOURCE, TRADE_HEADER, SCENARIO_TRADES if trades is None else trades)
    write_csv(config.CLIENTS_SOURCE, CLIENT_HEADER, SCENARIO_CLIENTS if clients is None else clients)


def wait_for(predicate, timeout=10.0, interval=0.02):
    """Poll until predicate() is true; fail loudly on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    raise AssertionError("Timed out waiting for condition")
