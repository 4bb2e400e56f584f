import math
from datetime import datetime

import database
from options_data import fetch_option_chain, fetch_option_greeks, fetch_option_prices, fetch_stock_price_history

# ==============================================================================
# SCANNER CONSTANTS
# ==============================================================================

# Phase 1: stock universe
MIN_PRICE = 13
MAX_PRICE = 150
MIN_AVG_VOLUME = 1000000
VOLUME_AVERAGE_DAYS = 20
SMA_PERIOD = 200
SMA_SHORT_PERIOD = 50
SMA_TREND_LOOKBACK = 20

# Phase 2: implied volatility
MIN_IV_RANK = 20

# Phase 3: contract selection
TARGET_MIN_DTE = 5
TARGET_MAX_DTE = 45
TARGET_MIN_DELTA = -0.30
TARGET_MAX_DELTA = -0.02
DELTA_SWEET_SPOT_MIN = -0.25
DELTA_SWEET_SPOT_MAX = -0.22
MIN_PREMIUM_YIELD = 8
MIN_OPEN_INTEREST = 0
MIN_OPTION_VOLUME = 20
MAX_SPREAD_PCT = 0.10
ASK_MARKUP = 1.02  # Ask is estimated from the last close

# Phase 4: scoring
WEIGHTS = {
    'yield': 0.30,
    'iv': 0.25,
    'delta': 0.15,
    'liquidity': 0.15,
    'trend': 0.15,
}
YIELD_RANGE_MIN = 8
YIELD_RANGE_MAX = 24
IV_RANK_RANGE_MIN = 20
IV_RANK_RANGE_MAX = 70
MAX_TREND_DISTANCE_PCT = 20
PREFERRED_OI = 500

# ==============================================================================
# END SCANNER CONSTANTS
# ==============================================================================


# ==============================================================================
# SCORING HELPERS
# ==============================================================================

def compute_sma(closes, period):
    """
    Simple moving average of the first `period` closes of a newest-first list.

    Returns None when there are fewer than `period` closes.

    Example:
        >>> compute_sma([10, 20, 30, 40], 2)
        15.0
    """
    if len(closes) < period:
        return None
    return sum(closes[:period]) / period


def compute_iv_rank(current_iv, low_iv, high_iv):
    """
    Where current IV sits in its range, 0 to 100.

    IV Rank = (Current - Low) / (High - Low) * 100

    Returns 0 when high <= low.
    """
    if high_iv <= low_iv:
        return 0
    rank = (current_iv - low_iv) / (high_iv - low_iv) * 100
    return max(0, min(100, rank))


def compute_premium_yield(bid, strike, dte):
    """
    Annualized premium yield on the strike as percentage.

    Yield = bid / strike * 365 / DTE * 100

    Example:
        >>> round(compute_premium_yield(1.0, 50, 30), 2)
        24.33
    """
    if strike <= 0 or dte <= 0:
        return 0
    return bid / strike * (365 / dte) * 100


def linear_score(value, low, high):
    if high <= low:
        return 0
    score = (value - low) / (high - low) * 100
    return max(0, min(100, score))


def compute_delta_score(delta):
    """
    100 inside the delta sweet spot, falling linearly to 0 at the range edges.

    Example:
        >>> compute_delta_score(-0.23)
        100
        >>> compute_delta_score(-0.35)
        0
    """
    abs_delta = abs(delta)
    sweet_low = abs(DELTA_SWEET_SPOT_MAX)
    sweet_high = abs(DELTA_SWEET_SPOT_MIN)

    if sweet_low <= abs_delta <= sweet_high:
        return 100

    range_low = abs(TARGET_MAX_DELTA)
    range_high = abs(TARGET_MIN_DELTA)
    if abs_delta < range_low or abs_delta > range_high:
        return 0

    if abs_delta < sweet_low:
        return linear_score(abs_delta, range_low, sweet_low)
    return linear_score(range_high - abs_delta, 0, range_high - sweet_high)


def compute_liquidity_score(open_interest, spread_pct):
    """Half open interest (vs PREFERRED_OI), half bid/ask spread tightness."""
    oi_score = min(100, open_interest / PREFERRED_OI * 100)
    if spread_pct <= 0:
        spread_score = 100
    else:
        spread_score = max(0, 100 - spread_pct / MAX_SPREAD_PCT * 100)
    return oi_score * 0.5 + spread_score * 0.5


def compute_trend_score(price, sma200):
    """Distance above the 200-day SMA, full marks at MAX_TREND_DISTANCE_PCT."""
    if sma200 <= 0:
        return 0
    pct_above = (price - sma200) / sma200 * 100
    if pct_above <= 0:
        return 0
    return min(100, pct_above / MAX_TREND_DISTANCE_PCT * 100)


def compute_dte(expiration, now):
    """Days to expiration, rounded up. expiration is a date or 'YYYY-MM-DD' string."""
    if isinstance(expiration, str):
        expiration = datetime.strptime(expiration[:10], '%Y-%m-%d')
    elif not isinstance(expiration, datetime):
        expiration = datetime(expiration.year, expiration.month, expiration.day)
    if not isinstance(now, datetime):
        now = datetime(now.year, now.month, now.day)
    return math.ceil((expiration - now).total_seconds() / 86400)


def _newest_first(records):
    return sorted(records, key=lambda r: r['date'], reverse=True)


# ==============================================================================
# END SCORING HELPERS
# ==============================================================================


# ==============================================================================
# PHASES
# ==============================================================================

def run_phase1(price_records):
    """
    Stock universe filter: price range, liquidity, and an uptrend.

    Args:
        price_records: Daily records with date, close and volume (any order)

    Returns:
        Dict with passed, reason, stock_price, sma200, sma50, avg_volume,
        trend_direction
    """
    if not price_records:
        return {'passed': False, 'reason': 'No price data', 'stock_price': 0, 'sma200': None,
                'sma50': None, 'avg_volume': 0, 'trend_direction': 'unknown'}

    ordered = _newest_first(price_records)
    closes = [r['close'] for r in ordered]
    volumes = [r['volume'] for r in ordered]

    stock_price = closes[0]
    sma200 = compute_sma(closes, SMA_PERIOD)
    sma50 = compute_sma(closes, SMA_SHORT_PERIOD)
    recent_volumes = volumes[:VOLUME_AVERAGE_DAYS]
    avg_volume = sum(recent_volumes) / len(recent_volumes)

    result = {
        'passed': False,
        'reason': None,
        'stock_price': stock_price,
        'sma200': sma200,
        'sma50': sma50,
        'avg_volume': avg_volume,
        'trend_direction': 'unknown',
    }

    if stock_price < MIN_PRICE or stock_price > MAX_PRICE:
        result['reason'] = f'Price ${stock_price:.2f} outside ${MIN_PRICE}-${MAX_PRICE} range'
        return result

    if avg_volume < MIN_AVG_VOLUME:
        result['reason'] = f'Avg volume {round(avg_volume):,} below {MIN_AVG_VOLUME:,} minimum'
        return result

    if sma200 is None:
        result['reason'] = 'Insufficient data for 200-day SMA'
        return result

    if stock_price <= sma200:
        result['reason'] = f'Price ${stock_price:.2f} below 200-day SMA ${sma200:.2f}'
        result['trend_direction'] = 'falling'
        return result

    # Compare today's SMA200 with the SMA200 from SMA_TREND_LOOKBACK days ago
    if len(closes) >= SMA_PERIOD + SMA_TREND_LOOKBACK:
        older_sma200 = compute_sma(closes[SMA_TREND_LOOKBACK:], SMA_PERIOD)
        if sma200 > older_sma200:
            trend = 'rising'
        elif sma200 < older_sma200:
            trend = 'falling'
        else:
            trend = 'flat'
    else:
        trend = 'rising'

    result['trend_direction'] = trend
    if trend == 'falling':
        result['reason'] = '200-day SMA is falling'
        return result

    result['passed'] = True
    return result


def run_phase2(greeks_records):
    """IV screen: rank the newest implied volatility within the record history."""
    if not greeks_records:
        return {'passed': False, 'reason': 'No IV data available', 'current_iv': 0,
                'iv_high_52w': 0, 'iv_low_52w': 0, 'iv_rank': 0}

    ordered = _newest_first(greeks_records)
    iv_values = [r['impliedVolatility'] for r in ordered]
    current_iv = iv_values[0]
    iv_high = max(iv_values)
    iv_low = min(iv_values)
    iv_rank = compute_iv_rank(current_iv, iv_low, iv_high)

    result = {
        'passed': iv_rank >= MIN_IV_RANK,
        'reason': None,
        'current_iv': current_iv,
        'iv_high_52w': iv_high,
        'iv_low_52w': iv_low,
        'iv_rank': iv_rank,
    }
    if not result['passed']:
        result['reason'] = f'IV Rank {iv_rank:.1f} below {MIN_IV_RANK} minimum'
    return result


def select_best_contract(put_contracts, greeks_map, prices_map, now):
    """
    Pick the put with the highest premium yield that clears every filter.

    Args:
        put_contracts: Chain records (identifier, strike, expiration)
        greeks_map: identifier -> latest greeks record
        prices_map: identifier -> latest price record
        now: Current datetime for DTE

    Returns:
        Dict with passed, reason and selected (or None)
    """
    candidates = []

    for contract in put_contracts:
        dte = compute_dte(contract['expiration'], now)
        if dte < TARGET_MIN_DTE or dte > TARGET_MAX_DTE:
            continue

        greeks = greeks_map.get(contract['identifier'])
        prices = prices_map.get(contract['identifier'])
        if not greeks or not prices:
            continue

        delta = greeks['delta']
        if delta > TARGET_MAX_DELTA or delta < TARGET_MIN_DELTA:
            continue

        bid = prices['close']
        ask = bid * ASK_MARKUP
        open_interest = prices.get('openInterest') or 0
        volume = prices.get('volume') or 0

        if open_interest < MIN_OPEN_INTEREST or volume < MIN_OPTION_VOLUME:
            continue

        mid = (bid + ask) / 2
        spread_pct = (ask - bid) / mid if mid > 0 else 1
        if spread_pct > MAX_SPREAD_PCT:
            continue

        premium_yield = compute_premium_yield(bid, contract['strike'], dte)
        if premium_yield < MIN_PREMIUM_YIELD:
            continue

        candidates.append({
            'contract': contract,
            'dte': dte,
            'delta': delta,
            'theta': greeks.get('theta'),
            'bid': bid,
            'ask': ask,
            'iv': greeks.get('impliedVolatility'),
            'open_interest': open_interest,
            'option_volume': volume,
            'premium_yield': premium_yield,
        })

    if not candidates:
        return {'passed': False, 'reason': 'No contracts meet DTE/delta/yield/liquidity criteria', 'selected': None}

    best = max(candidates, key=lambda c: c['premium_yield'])
    return {'passed': True, 'reason': None, 'selected': best}


def compute_scores(premium_yield, iv_rank, delta, open_interest, spread_pct, stock_price, sma200):
    """
    Weighted composite score (0-100) of a selected contract.

    Composite = 0.30*yield + 0.25*iv + 0.15*delta + 0.15*liquidity + 0.15*trend
    """
    scores = {
        'yield_score': linear_score(premium_yield, YIELD_RANGE_MIN, YIELD_RANGE_MAX),
        'iv_score': linear_score(iv_rank, IV_RANK_RANGE_MIN, IV_RANK_RANGE_MAX),
        'delta_score': compute_delta_score(delta),
        'liquidity_score': compute_liquidity_score(open_interest, spread_pct),
        'trend_score': compute_trend_score(stock_price, sma200),
    }
    scores['composite_score'] = (
        scores['yield_score'] * WEIGHTS['yield']
        + scores['iv_score'] * WEIGHTS['iv']
        + scores['delta_score'] * WEIGHTS['delta']
        + scores['liquidity_score'] * WEIGHTS['liquidity']
        + scores['trend_score'] * WEIGHTS['trend']
    )
    return scores


def check_portfolio(user_id, ticker):
    """Flag tickers where the user already has an open CSP or assigned shares."""
    open_puts = [
        t for t in database.list_trades(user_id, status='OPEN', ticker=ticker, trade_type='PUT')
        if t['action'] == 'SELL_TO_OPEN'
    ]
    open_positions = database.list_positions(user_id, status='OPEN', ticker=ticker)

    has_open_csp = len(open_puts) > 0
    has_assigned_pos = len(open_positions) > 0

    flag = None
    if has_open_csp:
        flag = 'Open CSP exists, skip or sell covered call instead'
    elif has_assigned_pos:
        flag = 'Holding assigned shares, consider covered call'

    return {'has_open_csp': has_open_csp, 'has_assigned_pos': has_assigned_pos, 'portfolio_flag': flag}


# ==============================================================================
# END PHASES
# ==============================================================================


# ==============================================================================
# PIPELINE
# ==============================================================================

def _empty_result(ticker):
    return {
        'ticker': ticker,
        'passed_phase1': False,
        'phase1_reason': None,
        'passed_phase2': False,
        'phase2_reason': None,
        'passed_phase3': False,
        'phase3_reason': None,
        'has_open_csp': False,
        'has_assigned_pos': False,
        'portfolio_flag': None,
        'composite_score': None,
        'passed': False,
        'final_reason': None,
    }


def _latest_records(put_contracts):
    greeks_map = {}
    prices_map = {}
    for contract in put_contracts:
        identifier = contract['identifier']
        greeks = fetch_option_greeks(identifier)
        if greeks['success'] and greeks['records']:
            greeks_map[identifier] = _newest_first(greeks['records'])[0]
        prices = fetch_option_prices(identifier)
        if prices['success'] and prices['records']:
            prices_map[identifier] = _newest_first(prices['records'])[0]
    return greeks_map, prices_map


def scan_ticker(ticker, user_id, now=None):
    """
    Run the five-phase pipeline for one ticker.

    Stops at the first failing phase and records its reason.

    Returns:
        Result dict; passed is True only when every phase passed
    """
    now = now or datetime.now()
    result = _empty_result(ticker)

    # Phase 1: stock universe
    history = fetch_stock_price_history(ticker)
    if not history['success']:
        result['phase1_reason'] = history['error']
        result['final_reason'] = f"Phase 1 failed: {history['error']}"
        return result

    p1 = run_phase1(history['records'])
    result.update({
        'stock_price': p1['stock_price'],
        'sma200': p1['sma200'],
        'sma50': p1['sma50'],
        'avg_volume': p1['avg_volume'],
        'trend_direction': p1['trend_direction'],
        'passed_phase1': p1['passed'],
        'phase1_reason': p1['reason'],
    })
    if not p1['passed']:
        result['final_reason'] = f"Phase 1: {p1['reason']}"
        return result

    # Phase 2: IV from the put nearest the money
    chain = fetch_option_chain(ticker)
    if not chain['success']:
        result['phase2_reason'] = chain['error']
        result['final_reason'] = f"Phase 2 failed: {chain['error']}"
        return result

    puts = [c for c in chain['contracts'] if c.get('type') == 'put']
    if not puts:
        result['phase2_reason'] = 'No put contracts available'
        result['final_reason'] = 'Phase 2: No put contracts available'
        return result

    atm_put = min(puts, key=lambda c: abs(c['strike'] - p1['stock_price']))
    atm_greeks = fetch_option_greeks(atm_put['identifier'])
    if not atm_greeks['success']:
        result['phase2_reason'] = atm_greeks['error']
        result['final_reason'] = f"Phase 2 failed: {atm_greeks['error']}"
        return result

    p2 = run_phase2(atm_greeks['records'])
    result.update({
        'current_iv': p2['current_iv'],
        'iv_high_52w': p2['iv_high_52w'],
        'iv_low_52w': p2['iv_low_52w'],
        'iv_rank': p2['iv_rank'],
        'passed_phase2': p2['passed'],
        'phase2_reason': p2['reason'],
    })
    if not p2['passed']:
        result['final_reason'] = f"Phase 2: {p2['reason']}"
        return result

    # Phase 3: contract selection
    candidates = [c for c in puts if TARGET_MIN_DTE <= compute_dte(c['expiration'], now) <= TARGET_MAX_DTE]
    greeks_map, prices_map = _latest_records(candidates)
    p3 = select_best_contract(candidates, greeks_map, prices_map, now)
    result['passed_phase3'] = p3['passed']
    result['phase3_reason'] = p3['reason']
    if not p3['passed']:
        result['final_reason'] = f"Phase 3: {p3['reason']}"
        return result

    selected = p3['selected']
    result.update({
        'contract_name': selected['contract']['identifier'],
        'strike': selected['contract']['strike'],
        'expiration': selected['contract']['expiration'],
        'dte': selected['dte'],
        'delta': selected['delta'],
        'theta': selected['theta'],
        'bid': selected['bid'],
        'ask': selected['ask'],
        'iv': selected['iv'],
        'open_interest': selected['open_interest'],
        'option_volume': selected['option_volume'],
        'premium_yield': selected['premium_yield'],
    })

    # Phase 4: scoring
    mid = (selected['bid'] + selected['ask']) / 2
    spread_pct = (selected['ask'] - selected['bid']) / mid if mid > 0 else 0
    result.update(compute_scores(
        selected['premium_yield'],
        p2['iv_rank'],
        selected['delta'],
        selected['open_interest'],
        spread_pct,
        p1['stock_price'],
        p1['sma200'],
    ))

    # Phase 5: portfolio checks
    result.update(check_portfolio(user_id, ticker))

    result['passed'] = True
    return result


def run_full_scan(user_id, now=None):
    """
    Scan every watchlist ticker in order and store the results.

    Tickers are scanned one at a time so the shared rate limiter paces
    the API calls. A ticker that raises becomes a failed result.

    Returns:
        Dict with scan_date, results, total_scanned and total_passed
    """
    now = now or datetime.now()
    scan_date = now.isoformat(timespec='seconds')
    tickers = database.list_watchlist(user_id)
    print(f"[SCANNER] Scanning {len(tickers)} tickers")

    results = []
    for ticker in tickers:
        try:
            results.append(scan_ticker(ticker, user_id, now=now))
        except Exception as e:
            print(f"[SCANNER] Error scanning {ticker}: {e}")
            failed = _empty_result(ticker)
            failed['final_reason'] = f'Scan error: {e}'
            results.append(failed)

    database.replace_scan_results(user_id, scan_date, results)

    total_passed = sum(1 for r in results if r['passed'])
    print(f"SUCCESS: Scan complete, {total_passed}/{len(results)} passed")
    return {
        'scan_date': scan_date,
        'results': results,
        'total_scanned': len(results),
        'total_passed': total_passed,
    }


# ==============================================================================
# END PIPELINE
# ==============================================================================
