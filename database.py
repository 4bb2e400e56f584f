"""SQLite storage for users, trades, positions, wheels, deposits and webhook state."""

import sqlite3
import json
import os
from datetime import datetime
from contextlib import contextmanager

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get('DATABASE_PATH', os.path.join(SCRIPT_DIR, 'wheeltracker.db'))


def _now():
    return datetime.now().isoformat(timespec='seconds')


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction():
    """One connection for a group of writes: committed together or rolled back on error."""
    with get_db() as conn:
        with conn:
            yield conn


def init_database():
    """Create the schema if it does not exist yet."""
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT,
                name TEXT,
                subscription_tier TEXT NOT NULL DEFAULT 'FREE',
                subscription_status TEXT,
                stripe_customer_id TEXT UNIQUE,
                stripe_subscription_id TEXT,
                subscription_start_date TEXT,
                subscription_ends_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Covered calls point at the position they are written against via position_id
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                ticker TEXT NOT NULL,
                type TEXT NOT NULL,
                action TEXT NOT NULL DEFAULT 'SELL_TO_OPEN',
                status TEXT NOT NULL DEFAULT 'OPEN',
                strike_price REAL NOT NULL,
                premium REAL NOT NULL,
                contracts INTEGER NOT NULL,
                shares INTEGER NOT NULL,
                open_date TEXT NOT NULL,
                expiration_date TEXT NOT NULL,
                close_date TEXT,
                close_premium REAL,
                notes TEXT,
                position_id INTEGER,
                wheel_id INTEGER,
                rolled_from_id INTEGER,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_trades_user_status ON trades(user_id, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_trades_position ON trades(position_id)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS positions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                ticker TEXT NOT NULL,
                shares INTEGER NOT NULL,
                cost_basis REAL NOT NULL,
                total_cost REAL NOT NULL,
                acquired_date TEXT NOT NULL,
                closed_date TEXT,
                status TEXT NOT NULL DEFAULT 'OPEN',
                realized_gain_loss REAL,
                assignment_trade_id INTEGER,
                wheel_id INTEGER,
                notes TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_positions_user_status ON positions(user_id, status)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS wheels (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                ticker TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                cycle_count INTEGER NOT NULL DEFAULT 0,
                total_premiums REAL NOT NULL DEFAULT 0,
                total_realized_pl REAL NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                last_activity_at TEXT NOT NULL,
                completed_at TEXT,
                notes TEXT
            )
        ''')

        # Withdrawals are stored with negative amount and negative spy_shares
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS cash_deposits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                amount REAL NOT NULL,
                type TEXT NOT NULL,
                deposit_date TEXT NOT NULL,
                notes TEXT,
                spy_price REAL NOT NULL,
                spy_shares REAL NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_deposits_user_date ON cash_deposits(user_id, deposit_date)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS market_benchmarks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                ticker TEXT NOT NULL,
                initial_capital REAL NOT NULL,
                setup_date TEXT NOT NULL,
                initial_price REAL NOT NULL,
                shares REAL NOT NULL,
                last_updated TEXT,
                UNIQUE(user_id, ticker)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS stock_prices (
                ticker TEXT PRIMARY KEY,
                price REAL NOT NULL,
                price_date TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                source TEXT DEFAULT 'yfinance'
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS watchlist (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                ticker TEXT NOT NULL,
                added_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, ticker)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS scan_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                scan_date TEXT NOT NULL,
                ticker TEXT NOT NULL,
                passed INTEGER NOT NULL DEFAULT 0,
                composite_score REAL,
                result_json TEXT NOT NULL DEFAULT '{}'
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS webhook_events (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                processed_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS webhook_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                success INTEGER NOT NULL,
                error TEXT,
                created_at TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_webhook_logs_created ON webhook_logs(created_at)')

        conn.commit()


# ==============================================================================
# GENERIC HELPERS
# ==============================================================================

def _insert(table, data, conn=None):
    columns = ', '.join(data.keys())
    placeholders = ', '.join('?' for _ in data)
    query = f'INSERT INTO {table} ({columns}) VALUES ({placeholders})'
    if conn is not None:
        return conn.execute(query, list(data.values())).lastrowid
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, list(data.values()))
        conn.commit()
        return cursor.lastrowid


def _update(table, row_id, fields, conn=None):
    if not fields:
        return False
    assignments = ', '.join(f'{column} = ?' for column in fields)
    query = f'UPDATE {table} SET {assignments} WHERE id = ?'
    if conn is not None:
        return conn.execute(query, list(fields.values()) + [row_id]).rowcount > 0
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, list(fields.values()) + [row_id])
        conn.commit()
        return cursor.rowcount > 0


def _fetch_one(query, params=()):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        row = cursor.fetchone()
        return dict(row) if row else None


def _fetch_all(query, params=()):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]


# ==============================================================================
# USERS
# ==============================================================================

def get_or_create_default_user():
    """Return the first user, creating one when the table is empty."""
    user = _fetch_one('SELECT * FROM users ORDER BY id LIMIT 1')
    if user:
        return user
    user_id = _insert('users', {'email': 'owner@localhost', 'name': 'Owner', 'created_at': _now()})
    return get_user(user_id)


def get_user(user_id):
    return _fetch_one('SELECT * FROM users WHERE id = ?', (user_id,))


def get_user_by_customer_id(customer_id):
    return _fetch_one('SELECT * FROM users WHERE stripe_customer_id = ?', (customer_id,))


def update_user(user_id, **fields):
    return _update('users', user_id, fields)


# ==============================================================================
# TRADES
# ==============================================================================

def insert_trade(data, conn=None):
    return _insert('trades', data, conn)


def get_trade(trade_id):
    return _fetch_one('SELECT * FROM trades WHERE id = ?', (trade_id,))


def update_trade(trade_id, conn=None, **fields):
    return _update('trades', trade_id, fields, conn)


def list_trades(user_id, status=None, ticker=None, start_date=None, end_date=None, trade_type=None):
    """Get trades with optional filtering, oldest open date first."""
    query = 'SELECT * FROM trades WHERE user_id = ?'
    params = [user_id]

    if status:
        query += ' AND status = ?'
        params.append(status)

    if ticker:
        query += ' AND ticker = ?'
        params.append(ticker.upper())

    if trade_type:
        query += ' AND type = ?'
        params.append(trade_type)

    if start_date:
        query += ' AND open_date >= ?'
        params.append(start_date)

    if end_date:
        query += ' AND open_date <= ?'
        params.append(end_date)

    query += ' ORDER BY open_date ASC, id ASC'
    return _fetch_all(query, params)


def count_trades(user_id):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT COUNT(*) FROM trades WHERE user_id = ?', (user_id,))
        return cursor.fetchone()[0]


def list_trades_for_position(position_id):
    return _fetch_all('SELECT * FROM trades WHERE position_id = ? ORDER BY open_date ASC, id ASC', (position_id,))


def list_trades_for_wheel(wheel_id):
    return _fetch_all('SELECT * FROM trades WHERE wheel_id = ? ORDER BY open_date ASC, id ASC', (wheel_id,))


# ==============================================================================
# POSITIONS
# ==============================================================================

def insert_position(data, conn=None):
    return _insert('positions', data, conn)


def get_position(position_id):
    return _fetch_one('SELECT * FROM positions WHERE id = ?', (position_id,))


def update_position(position_id, conn=None, **fields):
    return _update('positions', position_id, fields, conn)


def list_positions(user_id, status=None, ticker=None):
    query = 'SELECT * FROM positions WHERE user_id = ?'
    params = [user_id]

    if status:
        query += ' AND status = ?'
        params.append(status)

    if ticker:
        query += ' AND ticker = ?'
        params.append(ticker.upper())

    query += ' ORDER BY status ASC, acquired_date DESC, id DESC'
    return _fetch_all(query, params)


def list_positions_with_premiums(user_id, status=None):
    """
    Get positions with the premiums attached to them.

    Each position gains a `put_premium` (the assignment PUT's premium) and a
    `call_premiums` list (premiums of CALL trades written against it).
    """
    positions = list_positions(user_id, status=status)
    for position in positions:
        calls = _fetch_all(
            "SELECT premium FROM trades WHERE position_id = ? AND type = 'CALL'",
            (position['id'],)
        )
        position['call_premiums'] = [call['premium'] for call in calls]

        put_premium = 0
        if position['assignment_trade_id']:
            put = get_trade(position['assignment_trade_id'])
            if put:
                put_premium = put['premium']
        position['put_premium'] = put_premium
    return positions


# ==============================================================================
# WHEELS
# ==============================================================================

def insert_wheel(data):
    return _insert('wheels', data)


def get_wheel(wheel_id):
    return _fetch_one('SELECT * FROM wheels WHERE id = ?', (wheel_id,))


def update_wheel(wheel_id, conn=None, **fields):
    return _update('wheels', wheel_id, fields, conn)


def get_active_wheel(user_id, ticker):
    return _fetch_one(
        "SELECT * FROM wheels WHERE user_id = ? AND ticker = ? AND status = 'ACTIVE' ORDER BY id DESC LIMIT 1",
        (user_id, ticker.upper())
    )


def list_wheels(user_id, status=None, ticker=None):
    query = 'SELECT * FROM wheels WHERE user_id = ?'
    params = [user_id]

    if status:
        query += ' AND status = ?'
        params.append(status)

    if ticker:
        query += ' AND ticker = ?'
        params.append(ticker.upper())

    query += ' ORDER BY status ASC, last_activity_at DESC'
    return _fetch_all(query, params)


# ==============================================================================
# CASH DEPOSITS AND BENCHMARKS
# ==============================================================================

def insert_deposit(data):
    return _insert('cash_deposits', data)


def get_deposit(deposit_id):
    return _fetch_one('SELECT * FROM cash_deposits WHERE id = ?', (deposit_id,))


def delete_deposit(deposit_id):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM cash_deposits WHERE id = ?', (deposit_id,))
        conn.commit()
        return cursor.rowcount > 0


def list_deposits(user_id, deposit_type=None, start_date=None, end_date=None, newest_first=False):
    query = 'SELECT * FROM cash_deposits WHERE user_id = ?'
    params = [user_id]

    if deposit_type:
        query += ' AND type = ?'
        params.append(deposit_type)

    if start_date:
        query += ' AND deposit_date >= ?'
        params.append(start_date)

    if end_date:
        query += ' AND deposit_date <= ?'
        params.append(end_date)

    order = 'DESC' if newest_first else 'ASC'
    query += f' ORDER BY deposit_date {order}, id {order}'
    return _fetch_all(query, params)


def get_benchmark(user_id, ticker):
    return _fetch_one(
        'SELECT * FROM market_benchmarks WHERE user_id = ? AND ticker = ?',
        (user_id, ticker.upper())
    )


def list_benchmarks(user_id):
    return _fetch_all('SELECT * FROM market_benchmarks WHERE user_id = ? ORDER BY ticker', (user_id,))


def delete_benchmark(user_id, ticker):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            'DELETE FROM market_benchmarks WHERE user_id = ? AND ticker = ?',
            (user_id, ticker.upper())
        )
        conn.commit()
        return cursor.rowcount > 0


def upsert_benchmark(user_id, ticker, initial_capital, setup_date, initial_price, shares):
    """Create or replace the benchmark row for a ticker."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO market_benchmarks (user_id, ticker, initial_capital, setup_date, initial_price, shares, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, ticker) DO UPDATE SET
                initial_capital = excluded.initial_capital,
                setup_date = excluded.setup_date,
                initial_price = excluded.initial_price,
                shares = excluded.shares,
                last_updated = excluded.last_updated
        ''', (user_id, ticker.upper(), initial_capital, setup_date, initial_price, shares, _now()))
        conn.commit()
    return get_benchmark(user_id, ticker)


# ==============================================================================
# PRICE CACHE
# ==============================================================================

def get_cached_price(ticker):
    return _fetch_one('SELECT * FROM stock_prices WHERE ticker = ?', (ticker.upper(),))


def get_cached_prices(tickers=None):
    """Return {ticker: price} for the requested tickers (all when None)."""
    rows = _fetch_all('SELECT ticker, price FROM stock_prices')
    prices = {row['ticker']: row['price'] for row in rows}
    if tickers is None:
        return prices
    return {t.upper(): prices[t.upper()] for t in tickers if t.upper() in prices}


def save_price(ticker, price, price_date, source='yfinance'):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT OR REPLACE INTO stock_prices (ticker, price, price_date, updated_at, source)
            VALUES (?, ?, ?, ?, ?)
        ''', (ticker.upper(), float(price), price_date, _now(), source))
        conn.commit()


# ==============================================================================
# WATCHLIST AND SCAN RESULTS
# ==============================================================================

def add_watchlist_ticker(user_id, ticker):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            'INSERT OR IGNORE INTO watchlist (user_id, ticker, added_at) VALUES (?, ?, ?)',
            (user_id, ticker.upper(), _now())
        )
        conn.commit()
        return cursor.rowcount > 0


def remove_watchlist_ticker(user_id, ticker):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM watchlist WHERE user_id = ? AND ticker = ?', (user_id, ticker.upper()))
        conn.commit()
        return cursor.rowcount > 0


def list_watchlist(user_id):
    rows = _fetch_all('SELECT ticker FROM watchlist WHERE user_id = ? ORDER BY ticker', (user_id,))
    return [row['ticker'] for row in rows]


def replace_scan_results(user_id, scan_date, results):
    """Delete the previous scan for the user and store the new one."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM scan_results WHERE user_id = ?', (user_id,))
        for result in results:
            cursor.execute('''
                INSERT INTO scan_results (user_id, scan_date, ticker, passed, composite_score, result_json)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                user_id,
                scan_date,
                result['ticker'],
                1 if result.get('passed') else 0,
                result.get('composite_score'),
                json.dumps(result, default=str),
            ))
        conn.commit()


def list_scan_results(user_id):
    rows = _fetch_all(
        'SELECT * FROM scan_results WHERE user_id = ? ORDER BY passed DESC, composite_score DESC, ticker ASC',
        (user_id,)
    )
    results = []
    for row in rows:
        result = json.loads(row['result_json'])
        result['scan_date'] = row['scan_date']
        results.append(result)
    return results


# ==============================================================================
# WEBHOOK STATE
# ==============================================================================

def get_webhook_event(event_id):
    return _fetch_one('SELECT * FROM webhook_events WHERE id = ?', (event_id,))


def insert_webhook_event(event_id, event_type):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            'INSERT INTO webhook_events (id, type, processed_at) VALUES (?, ?, ?)',
            (event_id, event_type, _now())
        )
        conn.commit()


def insert_webhook_log(event_id, event_type, success, error=None):
    return _insert('webhook_logs', {
        'event_id': event_id,
        'event_type': event_type,
        'success': 1 if success else 0,
        'error': error,
        'created_at': _now(),
    })


def list_webhook_logs_since(since):
    return _fetch_all('SELECT * FROM webhook_logs WHERE created_at >= ? ORDER BY created_at', (since,))
