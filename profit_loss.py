import calendar
from datetime import date, datetime, timedelta

from calculations import calculate_unrealized_pnl

# ==============================================================================
# CONSTANTS
# ==============================================================================

TIMEFRAMES = ['daily', 'weekly', 'monthly', 'ytd', 'all']
TIME_RANGES = ['1M', '3M', '6M', '1Y', 'All']
TIME_RANGE_MONTHS = {'1M': 1, '3M': 3, '6M': 6, '1Y': 12}

# ==============================================================================
# END CONSTANTS
# ==============================================================================


def _iso(value):
    """Normalize a date, datetime or ISO string to 'YYYY-MM-DD' (None passes through)."""
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.strftime('%Y-%m-%d')
    return str(value)[:10]


def _in_range(value, start_date=None, end_date=None):
    day = _iso(value)
    if day is None:
        return False
    if start_date and day < _iso(start_date):
        return False
    if end_date and day > _iso(end_date):
        return False
    return True


# ==============================================================================
# P&L AGGREGATION
# Realized P&L comes from closed positions, unrealized from open ones
# ==============================================================================

def calculate_realized_pnl_by_ticker(closed_positions, ticker=None, start_date=None, end_date=None):
    """
    Group realized P&L of closed positions by ticker.

    Pure function with no side effects.

    Args:
        closed_positions: List of position dicts (ticker, total_cost, realized_gain_loss, closed_date)
        ticker: Optional ticker filter
        start_date: Optional lower bound on closed_date (inclusive)
        end_date: Optional upper bound on closed_date (inclusive)

    Returns:
        Dict of {ticker: {realized_pnl, cost, realized_pnl_percent, position_count}}

    Example:
        >>> calculate_realized_pnl_by_ticker([
        ...     {'ticker': 'AAPL', 'total_cost': 1000, 'realized_gain_loss': 100, 'closed_date': '2024-03-01'}
        ... ])
        {'AAPL': {'realized_pnl': 100, 'cost': 1000, 'realized_pnl_percent': 10.0, 'position_count': 1}}
    """
    grouped = {}

    for position in closed_positions:
        if position.get('status', 'CLOSED') != 'CLOSED':
            continue
        if ticker and position['ticker'] != ticker.upper():
            continue
        if (start_date or end_date) and not _in_range(position.get('closed_date'), start_date, end_date):
            continue

        entry = grouped.setdefault(position['ticker'], {'realized_pnl': 0, 'cost': 0, 'position_count': 0})
        entry['realized_pnl'] += position.get('realized_gain_loss') or 0
        entry['cost'] += position['total_cost']
        entry['position_count'] += 1

    for entry in grouped.values():
        entry['realized_pnl_percent'] = (entry['realized_pnl'] / entry['cost']) * 100 if entry['cost'] > 0 else 0

    return grouped


def calculate_unrealized_pnl_by_ticker(open_positions, prices):
    """
    Group unrealized P&L of open positions by ticker.

    Tickers without a current price are skipped entirely. The percentage is
    computed against the combined cost of all positions in the ticker.

    Args:
        open_positions: List of position dicts (ticker, shares, total_cost)
        prices: Dict of {ticker: current_price}

    Returns:
        Dict of {ticker: {unrealized_pnl, current_value, cost, unrealized_pnl_percent, position_count}}
    """
    grouped = {}

    for position in open_positions:
        if position.get('status', 'OPEN') != 'OPEN':
            continue

        result = calculate_unrealized_pnl(position['shares'], position['total_cost'], prices.get(position['ticker']))
        if result is None:
            continue

        entry = grouped.setdefault(position['ticker'], {
            'unrealized_pnl': 0, 'current_value': 0, 'cost': 0, 'position_count': 0
        })
        entry['unrealized_pnl'] += result['unrealized_pnl']
        entry['current_value'] += result['current_value']
        entry['cost'] += position['total_cost']
        entry['position_count'] += 1

    for entry in grouped.values():
        entry['unrealized_pnl_percent'] = (entry['unrealized_pnl'] / entry['cost']) * 100 if entry['cost'] > 0 else 0

    return grouped


def get_timeframe_start(timeframe, today=None):
    """
    Get the first day included in a P&L timeframe.

    Args:
        timeframe: One of 'daily', 'weekly', 'monthly', 'ytd', 'all'
        today: Reference date (defaults to date.today())

    Returns:
        date for the start of the window, or None for 'all'

    Raises:
        ValueError: If timeframe is not recognized

    Example:
        >>> get_timeframe_start('monthly', date(2024, 3, 15))
        datetime.date(2024, 3, 1)
    """
    today = today or date.today()

    if timeframe == 'daily':
        return today
    if timeframe == 'weekly':
        return today - timedelta(days=7)
    if timeframe == 'monthly':
        return today.replace(day=1)
    if timeframe == 'ytd':
        return today.replace(month=1, day=1)
    if timeframe == 'all':
        return None
    raise ValueError(f'Invalid timeframe. Must be one of: {", ".join(TIMEFRAMES)}')


def calculate_pnl_by_timeframe(positions, prices, timeframe, today=None):
    """
    Total P&L for a timeframe.

    Realized P&L counts positions closed inside the window. Unrealized P&L is a
    point-in-time mark, so it is only included for the 'all' timeframe.
    """
    today = today or date.today()
    start = get_timeframe_start(timeframe, today)

    closed = [p for p in positions if p['status'] == 'CLOSED']
    realized_by_ticker = calculate_realized_pnl_by_ticker(
        closed, start_date=start, end_date=today if start else None
    )
    realized = sum(entry['realized_pnl'] for entry in realized_by_ticker.values())

    unrealized = 0
    if timeframe == 'all':
        open_positions = [p for p in positions if p['status'] == 'OPEN']
        unrealized_by_ticker = calculate_unrealized_pnl_by_ticker(open_positions, prices)
        unrealized = sum(entry['unrealized_pnl'] for entry in unrealized_by_ticker.values())

    return {
        'timeframe': timeframe,
        'start_date': _iso(start),
        'end_date': _iso(today),
        'realized_pnl': realized,
        'unrealized_pnl': unrealized,
        'total_pnl': realized + unrealized,
    }


def merge_pnl_by_ticker(realized_by_ticker, unrealized_by_ticker):
    """Combine realized and unrealized maps into rows sorted by total P&L descending."""
    tickers = set(realized_by_ticker) | set(unrealized_by_ticker)
    rows = []
    for ticker in tickers:
        realized = realized_by_ticker.get(ticker, {}).get('realized_pnl', 0)
        unrealized = unrealized_by_ticker.get(ticker, {}).get('unrealized_pnl', 0)
        rows.append({
            'ticker': ticker,
            'realized_pnl': realized,
            'unrealized_pnl': unrealized,
            'total_pnl': realized + unrealized,
        })
    rows.sort(key=lambda row: row['total_pnl'], reverse=True)
    return rows


def calculate_portfolio_stats(positions, trades, prices):
    """
    Portfolio-wide P&L statistics.

    Return % = Total P&L / (Capital Deployed + |Realized P&L|) * 100

    Args:
        positions: All positions (open and closed)
        trades: All trades
        prices: Dict of {ticker: current_price}

    Returns:
        Dict with capital_deployed, premium_collected, realized_pnl,
        unrealized_pnl, total_pnl, return_pct, win_rate, assignment_rate,
        open_positions and closed_positions
    """
    open_positions = [p for p in positions if p['status'] == 'OPEN']
    closed_positions = [p for p in positions if p['status'] == 'CLOSED']

    capital_deployed = sum(p['total_cost'] for p in open_positions)
    premium_collected = sum(t['premium'] for t in trades)

    realized = sum(p.get('realized_gain_loss') or 0 for p in closed_positions)
    unrealized_by_ticker = calculate_unrealized_pnl_by_ticker(open_positions, prices)
    unrealized = sum(entry['unrealized_pnl'] for entry in unrealized_by_ticker.values())
    total = realized + unrealized

    denominator = capital_deployed + abs(realized)
    return_pct = (total / denominator) * 100 if denominator > 0 else 0

    winners = sum(1 for p in closed_positions if (p.get('realized_gain_loss') or 0) > 0)
    win_rate = (winners / len(closed_positions)) * 100 if closed_positions else 0

    assigned = sum(1 for t in trades if t['status'] == 'ASSIGNED')
    assignment_rate = (assigned / len(trades)) * 100 if trades else 0

    return {
        'capital_deployed': capital_deployed,
        'premium_collected': premium_collected,
        'realized_pnl': realized,
        'unrealized_pnl': unrealized,
        'total_pnl': total,
        'return_pct': return_pct,
        'win_rate': win_rate,
        'assignment_rate': assignment_rate,
        'open_positions': len(open_positions),
        'closed_positions': len(closed_positions),
    }


# ==============================================================================
# END P&L AGGREGATION
# ==============================================================================


# ==============================================================================
# DASHBOARD
# ==============================================================================

def get_time_range_threshold(time_range, today=None):
    """
    Get the earliest date included in a dashboard time range.

    Months are stepped back on the calendar, clamped to the month's last day
    (March 31 minus 1M is February 29 in a leap year).

    Returns:
        date threshold, or None for 'All'

    Raises:
        ValueError: If time_range is not recognized
    """
    today = today or date.today()

    if time_range == 'All':
        return None
    if time_range not in TIME_RANGE_MONTHS:
        raise ValueError(f'Invalid time range. Must be one of: {", ".join(TIME_RANGES)}')

    months_back = TIME_RANGE_MONTHS[time_range]
    month_index = today.year * 12 + (today.month - 1) - months_back
    year, month = divmod(month_index, 12)
    month += 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_position_unrealized(position, current_price):
    """
    Unrealized P&L of an open position including covered CALL premiums.

    Unrealized = Current Value - Total Cost + Covered Call Premiums
    Returns None when there is no usable price.
    """
    if current_price is None or current_price <= 0:
        return None
    current_value = current_price * position['shares']
    return current_value - position['total_cost'] + sum(position.get('call_premiums') or [])


def positions_since(positions, threshold, field='acquired_date'):
    """Positions whose `field` date falls on or after threshold; all of them when threshold is None."""
    if not threshold:
        return list(positions)
    return [p for p in positions if _in_range(p.get(field), threshold)]


def calculate_dashboard_metrics(positions, trades, deposits, prices, spy_price=None, threshold=None):
    """
    Headline dashboard metrics.

    Total Portfolio Value = Net Invested + Premium Collected + Unrealized P&L
    SPY Comparison Value = Total SPY-equivalent shares * current SPY price

    Args:
        positions: All positions, each with call_premiums
        trades: All trades
        deposits: All cash deposits and withdrawals (never filtered by range)
        prices: Dict of {ticker: current_price}
        spy_price: Current SPY price (None treated as 0)
        threshold: Optional earliest date (from get_time_range_threshold)

    Returns:
        Dict of dashboard metrics
    """
    if threshold:
        in_window = [p for p in positions if _in_range(p['acquired_date'], threshold)]
        trades = [t for t in trades if _in_range(t['open_date'], threshold)]
        closed = [p for p in positions if p['status'] == 'CLOSED' and _in_range(p.get('closed_date'), threshold)]
    else:
        in_window = list(positions)
        closed = [p for p in positions if p['status'] == 'CLOSED']

    realized = sum(p.get('realized_gain_loss') or 0 for p in in_window)

    unrealized = 0
    for position in in_window:
        if position['status'] != 'OPEN':
            continue
        position_pl = calculate_position_unrealized(position, prices.get(position['ticker']))
        if position_pl is not None:
            unrealized += position_pl

    premium_collected = sum(t['premium'] for t in trades)

    winners = sum(1 for p in closed if (p.get('realized_gain_loss') or 0) > 0)
    win_rate = (winners / len(closed)) * 100 if closed else 0

    assigned = sum(1 for t in trades if t['status'] == 'ASSIGNED')
    assignment_rate = (assigned / len(trades)) * 100 if trades else 0

    open_contracts = sum(t['contracts'] for t in trades if t['status'] == 'OPEN')

    net_invested = sum(d['amount'] for d in deposits)
    total_spy_shares = sum(d['spy_shares'] for d in deposits)

    distinct_stocks = {p['ticker'] for p in positions if p['status'] == 'OPEN'}

    return {
        'total_portfolio_value': net_invested + premium_collected + unrealized,
        'spy_comparison_value': total_spy_shares * (spy_price or 0),
        'cash_deposits': net_invested,
        'total_pl': realized + unrealized,
        'realized_pl': realized,
        'unrealized_pl': unrealized,
        'distinct_stock_count': len(distinct_stocks),
        'total_premium_collected': premium_collected,
        'win_rate': win_rate,
        'assignment_rate': assignment_rate,
        'open_contracts': open_contracts,
    }


def calculate_win_rate_data(closed_positions):
    winners = 0
    losers = 0
    breakeven = 0
    for position in closed_positions:
        gain = position.get('realized_gain_loss') or 0
        if gain > 0:
            winners += 1
        elif gain < 0:
            losers += 1
        else:
            breakeven += 1

    total = len(closed_positions)
    return {
        'winners': winners,
        'losers': losers,
        'breakeven': breakeven,
        'total': total,
        'win_rate': (winners / total) * 100 if total > 0 else 0,
    }


def calculate_pl_over_time(positions, prices, today=None):
    """
    Daily P&L series from the first acquisition date through today.

    Realized P&L accumulates on each position's acquisition date. Unrealized
    P&L on a date is the current mark of open positions acquired by then.
    Days without activity carry the previous values forward.

    Returns:
        List of {date, realized_pl, unrealized_pl, total_pl}; empty if no positions
    """
    today = today or date.today()
    by_date = {}

    for position in positions:
        key = _iso(position['acquired_date'])
        entry = by_date.setdefault(key, {'realized': 0, 'unrealized': 0})
        if position['status'] == 'CLOSED' and position.get('realized_gain_loss'):
            entry['realized'] += position['realized_gain_loss']
        elif position['status'] == 'OPEN':
            position_pl = calculate_position_unrealized(position, prices.get(position['ticker']))
            if position_pl is not None:
                entry['unrealized'] += position_pl

    if not by_date:
        return []

    series = []
    realized = 0
    unrealized = 0
    current = datetime.strptime(min(by_date), '%Y-%m-%d').date()

    while current <= today:
        key = current.strftime('%Y-%m-%d')
        if key in by_date:
            realized += by_date[key]['realized']
            unrealized += by_date[key]['unrealized']
        series.append({
            'date': key,
            'realized_pl': realized,
            'unrealized_pl': unrealized,
            'total_pl': realized + unrealized,
        })
        current += timedelta(days=1)

    return series


def calculate_pl_by_ticker(positions, prices):
    by_ticker = {}
    for position in positions:
        entry = by_ticker.setdefault(position['ticker'], {'realized_pnl': 0, 'unrealized_pnl': 0})
        if position['status'] == 'CLOSED' and position.get('realized_gain_loss'):
            entry['realized_pnl'] += position['realized_gain_loss']
        elif position['status'] == 'OPEN':
            position_pl = calculate_position_unrealized(position, prices.get(position['ticker']))
            if position_pl is not None:
                entry['unrealized_pnl'] += position_pl

    realized = {t: {'realized_pnl': v['realized_pnl']} for t, v in by_ticker.items()}
    unrealized = {t: {'unrealized_pnl': v['unrealized_pnl']} for t, v in by_ticker.items()}
    return merge_pnl_by_ticker(realized, unrealized)


# ==============================================================================
# END DASHBOARD
# ==============================================================================
