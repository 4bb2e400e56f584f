"""
Shared test fixtures and utilities for Wheel Tracker tests.

Usage:
    from tests.conftest import create_mock_stock_data, DatabaseTestCase

    class TestSomething(DatabaseTestCase):
        @patch('market_data.yf.Ticker')
        def test_price(self, mock_ticker):
            mock_ticker.return_value = create_mock_stock_data([100, 101])
            ...
"""

import hashlib
import hmac
import os
import tempfile
import time
import unittest
from unittest.mock import MagicMock, patch

import pandas as pd

import database


def create_mock_stock_data(prices, start_date='2024-01-01', volumes=None):
    """
    Create a mock yfinance Ticker object with historical price data.

    Args:
        prices: List of closing prices (one per day)
        start_date: Starting date for the price series (default: '2024-01-01')
        volumes: Optional list of daily volumes (default 1M per day)

    Returns:
        MagicMock object configured to behave like yf.Ticker

    Example:
        >>> mock = create_mock_stock_data([100, 101, 102])
    """
    mock_ticker = MagicMock()
    mock_ticker.history.return_value = create_price_history(prices, start_date, volumes)
    return mock_ticker


def create_price_history(prices, start_date='2024-01-01', volumes=None):
    """Price frame shaped like fetch_stock_data output: string index, OHLCV columns."""
    num_days = len(prices)
    dates = pd.date_range(start=start_date, periods=num_days, freq='D')

    hist = pd.DataFrame({
        'Open': prices,
        'High': prices,
        'Low': prices,
        'Close': prices,
        'Volume': volumes or [1000000] * num_days,
    }, index=dates)
    hist.index = hist.index.strftime('%Y-%m-%d')
    return hist


def make_stripe_signature(payload, secret, timestamp=None):
    """Build a valid Stripe-Signature header for payload."""
    timestamp = timestamp or int(time.time())
    signed = f'{timestamp}.{payload}'.encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


class DatabaseTestCase(unittest.TestCase):
    """Points the store at a fresh temporary SQLite file with one user."""

    def setUp(self):
        fd, self.db_path = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        self.db_patcher = patch('database.DB_PATH', self.db_path)
        self.db_patcher.start()
        database.init_database()
        self.user_id = database.get_or_create_default_user()['id']

    def tearDown(self):
        self.db_patcher.stop()
        os.remove(self.db_path)

    def add_deposit(self, amount, deposit_date='2024-01-02', spy_price=400.0, deposit_type='DEPOSIT'):
        sign = 1 if deposit_type == 'DEPOSIT' else -1
        return database.insert_deposit({
            'user_id': self.user_id,
            'amount': sign * amount,
            'type': deposit_type,
            'deposit_date': deposit_date,
            'notes': None,
            'spy_price': spy_price,
            'spy_shares': sign * amount / spy_price,
        })
