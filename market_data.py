import time
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pandas as pd
import yfinance as yf

import database

# ==============================================================================
# CONSTANTS
# ==============================================================================

MAX_RETRIES = 3
RETRY_DELAY = 1  # seconds, multiplied by the attempt number
STALE_PRICE_MINUTES = 60
PRICE_LOOKBACK_DAYS = 7  # Calendar days searched for the close on or before a date

MARKET_TZ = ZoneInfo('America/New_York')
MARKET_OPEN = (9, 30)
MARKET_CLOSE = (16, 0)

# US market holidays, refreshed once a year
MARKET_HOLIDAYS = {
    '2026-01-01',  # New Year's Day
    '2026-01-19',  # Martin Luther King Jr. Day
    '2026-02-16',  # Presidents' Day
    '2026-04-03',  # Good Friday
    '2026-05-25',  # Memorial Day
    '2026-07-03',  # Independence Day (observed)
    '2026-09-07',  # Labor Day
    '2026-11-26',  # Thanksgiving
    '2026-12-25',  # Christmas
}

# ==============================================================================
# END CONSTANTS
# ==============================================================================


# ==============================================================================
# PRICE HISTORY
# ==============================================================================

def fetch_stock_data(ticker, start_date, end_date):
    """
    Fetch daily price history from Yahoo Finance.

    Retries with linear backoff and normalizes the index to date strings.

    Args:
        ticker: Stock ticker symbol (e.g., 'SPY')
        start_date: First date to include
        end_date: Day after the last date to include

    Returns:
        pandas DataFrame with 'Close' (index as 'YYYY-MM-DD' strings)
        Returns None if data is unavailable or has missing closes

    Example:
        >>> hist = fetch_stock_data('SPY', '2024-01-01', '2024-02-01')
        >>> hist.index[0]
        '2024-01-02'
    """
    for attempt in range(MAX_RETRIES):
        try:
            hist = yf.Ticker(ticker).history(start=start_date, end=end_date, auto_adjust=False)

            if hist.empty:
                print(f"WARNING: {ticker} returned empty data for {start_date} to {end_date} (attempt {attempt + 1}/{MAX_RETRIES})")
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_DELAY * (attempt + 1))
                    continue
                return None

            if hist['Close'].isnull().any():
                print(f"WARNING: {ticker} has missing price data in range {start_date} to {end_date}")
                return None

            if isinstance(hist.index, pd.DatetimeIndex):
                hist.index = hist.index.strftime('%Y-%m-%d')

            print(f"SUCCESS: Fetched {len(hist)} days of data for {ticker}")
            return hist

        except Exception as e:
            print(f"ERROR fetching stock data for {ticker} (attempt {attempt + 1}/{MAX_RETRIES}): {e}")
            if attempt < MAX_RETRIES - 1:
                time.sleep(RETRY_DELAY * (attempt + 1))
                continue
            return None

    return None


def align_to_target_dates(hist, target_dates):
    """
    Reindex a price frame onto another series' dates.

    Missing days take the last known price, and leading gaps take the first.

    Returns:
        Aligned DataFrame, or None when nothing could be aligned
    """
    aligned = hist.reindex(target_dates).ffill().bfill()
    if aligned.isnull().all().all():
        return None
    return aligned


# ==============================================================================
# END PRICE HISTORY
# ==============================================================================


# ==============================================================================
# LATEST PRICES AND CACHE
# ==============================================================================

def fetch_latest_price(ticker):
    """
    Most recent daily close for a ticker.

    Returns:
        Dict with ticker, price, date, success and error
    """
    ticker = ticker.upper()
    end = date.today() + timedelta(days=1)
    hist = fetch_stock_data(ticker, end - timedelta(days=PRICE_LOOKBACK_DAYS + 1), end)

    if hist is None or hist.empty:
        return {'ticker': ticker, 'price': None, 'date': None, 'success': False,
                'error': f'No price data available for {ticker}'}

    return {
        'ticker': ticker,
        'price': float(hist['Close'].iloc[-1]),
        'date': hist.index[-1],
        'success': True,
        'error': None,
    }


def refresh_price(ticker):
    """Fetch the latest close and store it in the price cache."""
    result = fetch_latest_price(ticker)
    if result['success']:
        database.save_price(result['ticker'], result['price'], result['date'])
    return result


def is_price_stale(updated_at, now=None, max_age_minutes=STALE_PRICE_MINUTES):
    now = now or datetime.now()
    return datetime.fromisoformat(updated_at) < now - timedelta(minutes=max_age_minutes)


def get_latest_price(ticker, max_age_minutes=None):
    """
    Latest price, served from the cache when possible.

    A cached row is used when max_age_minutes is None or it is fresh enough;
    otherwise the price is fetched and the cache updated.

    Returns:
        Dict with ticker, price, date, source, success and error
    """
    ticker = ticker.upper()
    cached = database.get_cached_price(ticker)

    if cached and (max_age_minutes is None or not is_price_stale(cached['updated_at'], max_age_minutes=max_age_minutes)):
        return {
            'ticker': ticker,
            'price': cached['price'],
            'date': cached['price_date'],
            'source': 'cache',
            'success': True,
            'error': None,
        }

    result = refresh_price(ticker)
    result['source'] = 'yfinance'
    return result


def batch_fetch_prices(tickers):
    """
    Refresh a set of tickers one by one.

    Returns:
        Dict with successful (ticker/price/date), failed (ticker/error) and summary counts
    """
    unique = sorted({t.upper() for t in tickers})
    successful = []
    failed = []

    for ticker in unique:
        result = refresh_price(ticker)
        if result['success']:
            successful.append({'ticker': ticker, 'price': result['price'], 'date': result['date']})
        else:
            failed.append({'ticker': ticker, 'error': result['error']})

    return {
        'successful': successful,
        'failed': failed,
        'summary': {'total': len(unique), 'successful': len(successful), 'failed': len(failed)},
    }


def get_price_for_date(ticker, day, today=None):
    """
    Price of a ticker on `day`.

    Today (or later) uses the latest price; a past date uses the close on
    or before that date.

    Returns:
        Price as float, or None when no price is available
    """
    day = _as_date(day)
    today = today or date.today()

    if day >= today:
        result = get_latest_price(ticker)
        return result['price'] if result['success'] else None

    hist = fetch_stock_data(ticker, day - timedelta(days=PRICE_LOOKBACK_DAYS), day + timedelta(days=1))
    if hist is None:
        return None

    closes = hist['Close'][hist.index <= day.strftime('%Y-%m-%d')]
    if closes.empty:
        return None
    return float(closes.iloc[-1])


def get_spy_price_for_date(day, today=None):
    """SPY price used to record a cash flow on `day`."""
    return get_price_for_date('SPY', day, today)


# ==============================================================================
# END LATEST PRICES AND CACHE
# ==============================================================================


# ==============================================================================
# MARKET HOURS
# ==============================================================================

def _as_date(day):
    if isinstance(day, str):
        return datetime.strptime(day[:10], '%Y-%m-%d').date()
    if isinstance(day, datetime):
        return day.date()
    return day


def _to_market_time(now):
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(MARKET_TZ)


def is_weekend(day):
    return _as_date(day).weekday() >= 5


def is_market_holiday(day):
    return _as_date(day).strftime('%Y-%m-%d') in MARKET_HOLIDAYS


def is_market_open(now=None):
    """
    True during regular US trading hours (9:30 to 16:00 New York time).

    Naive datetimes are treated as UTC.
    """
    market_now = _to_market_time(now)
    if is_weekend(market_now) or is_market_holiday(market_now):
        return False

    minutes = market_now.hour * 60 + market_now.minute
    return MARKET_OPEN[0] * 60 + MARKET_OPEN[1] <= minutes < MARKET_CLOSE[0] * 60 + MARKET_CLOSE[1]


def get_next_market_open(now=None):
    """Next session open after today, as a New York time datetime."""
    market_now = _to_market_time(now)
    candidate = market_now.replace(hour=MARKET_OPEN[0], minute=MARKET_OPEN[1], second=0, microsecond=0)
    candidate += timedelta(days=1)

    for _ in range(10):
        if not is_weekend(candidate) and not is_market_holiday(candidate):
            break
        candidate += timedelta(days=1)

    return candidate


# ==============================================================================
# END MARKET HOURS
# ==============================================================================
