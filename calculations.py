from datetime import date, datetime

# ==============================================================================
# CONSTANTS
# ==============================================================================

SHARES_PER_CONTRACT = 100  # One equity option contract covers 100 shares
ATM_THRESHOLD = 0.01  # Within 1% of strike counts as at-the-money

# ==============================================================================
# END CONSTANTS
# ==============================================================================


def _to_date(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()


# ==============================================================================
# POSITION P&L
# Pure functions over a single stock position
# ==============================================================================

def calculate_unrealized_pnl(shares, total_cost, current_price):
    """
    Calculate unrealized P&L for an open stock position.

    Pure function with no side effects.

    Args:
        shares: Number of shares held
        total_cost: Total cost paid for the shares (net of PUT premium)
        current_price: Latest market price per share

    Returns:
        Dict with current_value, unrealized_pnl and unrealized_pnl_percent
        Returns None if current_price is missing or not positive

    Example:
        >>> calculate_unrealized_pnl(100, 4800, 52)
        {'current_value': 5200, 'unrealized_pnl': 400, 'unrealized_pnl_percent': 8.333333333333332}
    """
    if current_price is None or current_price <= 0:
        return None

    current_value = current_price * shares
    unrealized_pnl = current_value - total_cost
    unrealized_pnl_percent = (unrealized_pnl / total_cost) * 100 if total_cost > 0 else 0

    return {
        'current_value': current_value,
        'unrealized_pnl': unrealized_pnl,
        'unrealized_pnl_percent': unrealized_pnl_percent,
    }


def calculate_realized_pnl(total_cost, sale_proceeds, put_premium=0, call_premium=0):
    """
    Calculate realized P&L when shares are called away.

    Realized = Sale Proceeds + PUT Premium + CALL Premium - Total Cost
    Pure function with no side effects.

    Args:
        total_cost: Total cost of the position
        sale_proceeds: Strike price times shares sold
        put_premium: Premium collected on the assigned PUT
        call_premium: Premium collected on the assigned CALL

    Returns:
        Dict with realized_pnl and realized_pnl_percent
        realized_pnl_percent is 0 if total_cost is 0 or negative

    Example:
        >>> calculate_realized_pnl(4800, 5500, 200, 150)
        {'realized_pnl': 1050, 'realized_pnl_percent': 21.875}
    """
    realized_pnl = sale_proceeds + put_premium + call_premium - total_cost
    realized_pnl_percent = (realized_pnl / total_cost) * 100 if total_cost > 0 else 0
    return {
        'realized_pnl': realized_pnl,
        'realized_pnl_percent': realized_pnl_percent,
    }


def calculate_assignment_cost_basis(strike_price, premium, shares):
    """
    Calculate cost basis for shares received from PUT assignment.

    Cost Basis Per Share = Strike - (Total Premium / Shares)

    Args:
        strike_price: PUT strike price
        premium: Total premium collected for the PUT (dollars, not per share)
        shares: Shares received (contracts * 100)

    Returns:
        Tuple of (cost_basis_per_share, total_cost)

    Raises:
        ValueError: If shares is not positive

    Example:
        >>> calculate_assignment_cost_basis(50, 200, 100)
        (48.0, 4800.0)
    """
    if shares <= 0:
        raise ValueError('Shares must be positive to calculate cost basis')

    cost_basis = strike_price - premium / shares
    return cost_basis, cost_basis * shares


def calculate_position_days_held(acquired_date, closed_date=None, today=None):
    """Whole calendar days between acquisition and close (or today). Never negative."""
    start = _to_date(acquired_date)
    end = _to_date(closed_date) or _to_date(today) or date.today()
    return max(0, (end - start).days)


# ==============================================================================
# END POSITION P&L
# ==============================================================================


# ==============================================================================
# LONG/SHORT POSITION P&L
# Generic directional positions (stock or option legs held long or short)
# ==============================================================================

def _validate_directional_position(position):
    if position.get('quantity', 0) <= 0:
        raise ValueError(f"Invalid quantity: {position.get('quantity')}")
    if position.get('entry_price', 0) <= 0:
        raise ValueError(f"Invalid entry price: {position.get('entry_price')}")
    if position.get('side') not in ('LONG', 'SHORT'):
        raise ValueError(f"Invalid position side: {position.get('side')}")


def calculate_position_realized_pnl(position):
    """
    Calculate realized P&L for a closed LONG or SHORT position.

    LONG:  (Exit - Entry) * Quantity
    SHORT: (Entry - Exit) * Quantity

    Args:
        position: Dict with side, quantity, entry_price, exit_price, status

    Returns:
        Realized P&L in dollars

    Raises:
        ValueError: If the position is still open or has invalid fields

    Example:
        >>> calculate_position_realized_pnl({'side': 'SHORT', 'quantity': 10,
        ...     'entry_price': 50, 'exit_price': 45, 'status': 'CLOSED'})
        50
    """
    if position.get('status') != 'CLOSED':
        raise ValueError('Cannot calculate realized P&L for an open position')
    _validate_directional_position(position)

    exit_price = position.get('exit_price')
    if exit_price is None or exit_price <= 0:
        raise ValueError(f'Invalid exit price: {exit_price}')

    if position['side'] == 'LONG':
        return (exit_price - position['entry_price']) * position['quantity']
    return (position['entry_price'] - exit_price) * position['quantity']


def calculate_position_unrealized_pnl(position, current_price):
    """Mark an open LONG or SHORT position to the current price."""
    if position.get('status') == 'CLOSED':
        raise ValueError('Cannot calculate unrealized P&L for a closed position')
    _validate_directional_position(position)

    if current_price is None or current_price <= 0:
        raise ValueError(f'Invalid current price: {current_price}')

    if position['side'] == 'LONG':
        return (current_price - position['entry_price']) * position['quantity']
    return (position['entry_price'] - current_price) * position['quantity']


def calculate_portfolio_pnl(positions, prices):
    """
    Sum realized and unrealized P&L across directional positions.

    Args:
        positions: List of position dicts (must include 'ticker')
        prices: Dict of {ticker: current_price}

    Returns:
        Dict with realized, unrealized and total
        Open positions without a known price are skipped
    """
    realized = 0
    unrealized = 0

    for position in positions:
        if position.get('status') == 'CLOSED':
            realized += calculate_position_realized_pnl(position)
            continue

        price = prices.get(position.get('ticker'))
        if price is None:
            continue
        unrealized += calculate_position_unrealized_pnl(position, price)

    return {
        'realized': realized,
        'unrealized': unrealized,
        'total': realized + unrealized,
    }


# ==============================================================================
# END LONG/SHORT POSITION P&L
# ==============================================================================


# ==============================================================================
# WHEEL CALCULATIONS
# ==============================================================================

def calculate_cycle_pl(put_premium, call_premiums, realized_gain_loss=None):
    """
    Calculate total P&L for one wheel cycle.

    Cycle P&L = PUT premium + all CALL premiums + realized stock gain/loss

    Args:
        put_premium: Premium from the cash-secured PUT
        call_premiums: List of premiums from covered CALLs
        realized_gain_loss: Realized gain/loss on the shares (None while open)

    Returns:
        Cycle P&L in dollars

    Example:
        >>> calculate_cycle_pl(200, [150, 120], 300)
        770
    """
    return put_premium + sum(call_premiums) + (realized_gain_loss or 0)


def calculate_annualized_return(pl, capital, days):
    """
    Annualize a return over a holding period.

    Annualized = (P&L / Capital * 100) / Days * 365
    Simple (non-compounded) annualization, matching how premium yields are quoted.

    Args:
        pl: Profit or loss in dollars
        capital: Capital at risk
        days: Holding period in days

    Returns:
        Annualized return as percentage
        Returns 0 if capital or days is 0 or negative

    Example:
        >>> calculate_annualized_return(100, 5000, 30)
        24.333333333333332
    """
    if capital <= 0 or days <= 0:
        return 0
    return ((pl / capital) * 100) / days * 365


def calculate_cycle_win_rate(cycle_pls):
    """Percentage of cycles that ended with positive P&L."""
    if not cycle_pls:
        return 0
    winners = sum(1 for pl in cycle_pls if pl > 0)
    return (winners / len(cycle_pls)) * 100


def suggest_call_strike(cost_basis, desired_return_pct=0):
    """
    Suggest a covered CALL strike that locks in a minimum return.

    Args:
        cost_basis: Per-share cost basis of the assigned shares
        desired_return_pct: Target return over cost basis as percentage

    Returns:
        Suggested strike price
        Returns cost_basis unchanged if it is not positive or the return is negative

    Example:
        >>> suggest_call_strike(48, 5)
        50.4
    """
    if cost_basis <= 0 or desired_return_pct < 0:
        return cost_basis
    return cost_basis * (1 + desired_return_pct / 100)


def validate_cash_requirement(cash_balance, strike_price, contracts):
    """
    Check whether cash covers a cash-secured PUT.

    Required Cash = Strike * Contracts * 100

    Args:
        cash_balance: Available cash, or None if unknown
        strike_price: PUT strike price
        contracts: Number of contracts

    Returns:
        True if the PUT is cash-secured (or the balance is unknown)
        False for invalid strike/contracts or insufficient cash
    """
    if strike_price <= 0 or contracts <= 0:
        return False
    if cash_balance is None:
        return True
    return cash_balance >= strike_price * contracts * SHARES_PER_CONTRACT


def calculate_roll_net_premium(close_premium, open_premium):
    """Net credit (positive) or debit (negative) from rolling an option."""
    return open_premium - close_premium


def calculate_premium_cash_flow(action, premium, close_premium=None):
    """
    Cash a trade's premium moves into (positive) or out of (negative) the account.

    SELL_TO_OPEN collects the premium, less any buy-back paid to close it.
    BUY_TO_CLOSE pays the premium.

    Example:
        >>> calculate_premium_cash_flow('SELL_TO_OPEN', 200, close_premium=50)
        150
        >>> calculate_premium_cash_flow('BUY_TO_CLOSE', 500)
        -500
    """
    if action == 'BUY_TO_CLOSE':
        return -premium
    return premium - (close_premium or 0)


# ==============================================================================
# END WHEEL CALCULATIONS
# ==============================================================================


# ==============================================================================
# PORTFOLIO METRICS
# Aggregates across all wheels of a user
# ==============================================================================

def calculate_portfolio_metrics(wheels, open_positions):
    """
    Summarize every wheel into portfolio-level metrics.

    Args:
        wheels: List of wheel dicts (status, cycle_count, total_premiums, total_realized_pl)
        open_positions: List of open position dicts (total_cost)

    Returns:
        Dict with status counts, capital_deployed, total_premiums,
        total_realized_pl, total_cycles and overall_win_rate
    """
    status_counts = {'ACTIVE': 0, 'IDLE': 0, 'PAUSED': 0, 'COMPLETED': 0}
    for wheel in wheels:
        if wheel['status'] in status_counts:
            status_counts[wheel['status']] += 1

    total_cycles = sum(w['cycle_count'] for w in wheels)
    profitable_cycles = sum(w['cycle_count'] for w in wheels if w['total_realized_pl'] > 0)

    return {
        'total_wheels': len(wheels),
        'active_wheels': status_counts['ACTIVE'],
        'idle_wheels': status_counts['IDLE'],
        'paused_wheels': status_counts['PAUSED'],
        'completed_wheels': status_counts['COMPLETED'],
        'capital_deployed': sum(p['total_cost'] for p in open_positions),
        'total_premiums': sum(w['total_premiums'] for w in wheels),
        'total_realized_pl': sum(w['total_realized_pl'] for w in wheels),
        'total_cycles': total_cycles,
        'overall_win_rate': (profitable_cycles / total_cycles) * 100 if total_cycles > 0 else 0,
    }


def calculate_ticker_performances(wheels):
    performances = []
    for wheel in wheels:
        cycles = wheel['cycle_count']
        realized = wheel['total_realized_pl']
        performances.append({
            'wheel_id': wheel['id'],
            'ticker': wheel['ticker'],
            'status': wheel['status'],
            'cycle_count': cycles,
            'total_premiums': wheel['total_premiums'],
            'total_realized_pl': realized,
            'win_rate': 100 if cycles > 0 and realized > 0 else 0,
            'avg_pl_per_cycle': realized / cycles if cycles > 0 else 0,
        })
    return performances


def get_best_and_worst_performers(performances, limit=5):
    """
    Split ticker performances into best and worst by realized P&L.

    Returns:
        Tuple of (best, worst); worst is ordered from the biggest loser up
    """
    ranked = sorted(performances, key=lambda p: p['total_realized_pl'], reverse=True)
    best = ranked[:limit]
    worst = list(reversed(ranked[-limit:])) if ranked else []
    return best, worst


def format_currency(value):
    """
    Format a dollar amount.

    Example:
        >>> format_currency(-1234.5)
        '-$1,234.50'
    """
    if value < 0:
        return f'-${abs(value):,.2f}'
    return f'${value:,.2f}'


def format_percentage(value, decimals=1):
    return f'{value:.{decimals}f}%'


# ==============================================================================
# END PORTFOLIO METRICS
# ==============================================================================


# ==============================================================================
# OPTION MONEYNESS
# ==============================================================================

def _moneyness(current_price, strike_price, threshold, in_the_money, intrinsic_value):
    if strike_price <= 0:
        raise ValueError('Strike price must be positive')

    percent_from_strike = ((current_price - strike_price) / strike_price) * 100

    if abs(current_price - strike_price) / strike_price <= threshold:
        label = 'ATM'
    elif in_the_money:
        label = 'ITM'
    else:
        label = 'OTM'

    return {
        'label': label,
        'intrinsic_value': intrinsic_value,
        'percent_from_strike': percent_from_strike,
    }


def calculate_put_moneyness(current_price, strike_price, threshold=ATM_THRESHOLD):
    """
    Classify a PUT as ITM, ATM or OTM.

    A PUT is in the money when the stock trades below the strike.

    Example:
        >>> calculate_put_moneyness(45, 50)['label']
        'ITM'
    """
    return _moneyness(
        current_price,
        strike_price,
        threshold,
        current_price < strike_price,
        max(0, strike_price - current_price),
    )


def calculate_call_moneyness(current_price, strike_price, threshold=ATM_THRESHOLD):
    """
    Classify a CALL as ITM, ATM or OTM.

    A CALL is in the money when the stock trades above the strike.
    """
    return _moneyness(
        current_price,
        strike_price,
        threshold,
        current_price > strike_price,
        max(0, current_price - strike_price),
    )


def calculate_moneyness(option_type, current_price, strike_price, threshold=ATM_THRESHOLD):
    if option_type == 'PUT':
        return calculate_put_moneyness(current_price, strike_price, threshold)
    if option_type == 'CALL':
        return calculate_call_moneyness(current_price, strike_price, threshold)
    raise ValueError(f'Invalid option type: {option_type}. Must be PUT or CALL')


# ==============================================================================
# END OPTION MONEYNESS
# ==============================================================================
