import os
import threading
import time

import requests

# ==============================================================================
# CONSTANTS
# ==============================================================================

API_BASE_URL = 'https://financialdata.net/api/v1'
REQUEST_TIMEOUT = 30  # seconds

MAX_REQUESTS_PER_MINUTE = 10
MIN_REQUEST_INTERVAL = 6.0  # seconds between consecutive requests
RATE_WINDOW = 60.0  # seconds

# ==============================================================================
# END CONSTANTS
# ==============================================================================


class RateLimiter:
    """
    Blocking sliding-window limiter shared by every financialdata.net call.

    At most max_requests are allowed in any rolling window, and consecutive
    requests are spaced by at least min_interval seconds. Callers from
    different threads are served one at a time.
    """

    def __init__(self, max_requests=MAX_REQUESTS_PER_MINUTE, min_interval=MIN_REQUEST_INTERVAL,
                 window=RATE_WINDOW):
        self.max_requests = max_requests
        self.min_interval = min_interval
        self.window = window
        self.request_times = []
        self._lock = threading.Lock()

    def wait(self):
        """Sleep until another request is allowed, then record it."""
        with self._lock:
            self._wait_for_slot()

    def _wait_for_slot(self):
        now = time.monotonic()
        self.request_times = [t for t in self.request_times if now - t < self.window]

        if len(self.request_times) >= self.max_requests:
            delay = self.window - (now - self.request_times[0])
            if delay > 0:
                time.sleep(delay)
                now = time.monotonic()
                self.request_times = [t for t in self.request_times if now - t < self.window]

        if self.request_times:
            since_last = now - self.request_times[-1]
            if since_last < self.min_interval:
                time.sleep(self.min_interval - since_last)
                now = time.monotonic()

        self.request_times.append(now)


rate_limiter = RateLimiter()


def _api_key():
    api_key = os.environ.get('FINANCIAL_DATA_API_KEY')
    if not api_key:
        raise RuntimeError('FINANCIAL_DATA_API_KEY is not configured in environment variables')
    return api_key


def _http_error(response, identifier):
    if response.ok:
        return None
    if response.status_code == 401:
        return 'API authentication failed. Check FINANCIAL_DATA_API_KEY.'
    if response.status_code == 404:
        return f'No data found for identifier: {identifier}'
    if response.status_code == 429:
        return 'API rate limit exceeded. Please try again later.'
    return f'API server error: {response.status_code} {response.reason}'


def _fetch_records(endpoint, identifier, description):
    """
    GET one financialdata.net endpoint and return (records, error).

    Exactly one of the two is meaningful: records is a non-empty list on
    success, error is a message otherwise.
    """
    api_key = _api_key()
    url = f'{API_BASE_URL}/{endpoint}'

    try:
        rate_limiter.wait()
        response = requests.get(url, params={'identifier': identifier, 'key': api_key},
                                timeout=REQUEST_TIMEOUT)

        error = _http_error(response, identifier)
        if error:
            return [], error

        data = response.json()
        if not isinstance(data, list) or len(data) == 0:
            return [], f'No {description} data for {identifier}'

        return data, None

    except (requests.RequestException, ValueError) as e:
        print(f"ERROR fetching {description} for {identifier}: {e}")
        return [], f'Failed to fetch {description}: {e}'


def fetch_stock_price_history(ticker):
    """
    Full daily price history for a ticker.

    Returns:
        Dict with ticker, records (date/open/high/low/close/volume), success, error
    """
    ticker = ticker.upper()
    records, error = _fetch_records('stock-prices', ticker, 'price history')
    return {'ticker': ticker, 'records': records, 'success': error is None, 'error': error}


def fetch_option_chain(ticker):
    """
    Every listed contract for a ticker (identifier, strike, expiration, type).

    Returns:
        Dict with ticker, contracts, success, error
    """
    ticker = ticker.upper()
    contracts, error = _fetch_records('option-chain', ticker, 'option chain')
    return {'ticker': ticker, 'contracts': contracts, 'success': error is None, 'error': error}


def fetch_option_greeks(contract_name):
    """Greeks history for one contract: date, delta, gamma, theta, vega, rho, impliedVolatility."""
    records, error = _fetch_records('option-greeks', contract_name, 'greeks')
    return {'contract_name': contract_name, 'records': records, 'success': error is None, 'error': error}


def fetch_option_prices(contract_name):
    """OHLCV history (with openInterest when available) for one contract."""
    records, error = _fetch_records('option-prices', contract_name, 'option price')
    return {'contract_name': contract_name, 'records': records, 'success': error is None, 'error': error}
