"""Trade, position, wheel, deposit and benchmark lifecycle over the store."""

import os
import re
from datetime import date, datetime, timedelta, timezone

import database
import market_data
from benchmark import (
    DEPOSIT, WITHDRAWAL, calculate_benchmark_metrics, calculate_benchmark_shares,
    calculate_deposit_spy_shares, calculate_spy_benchmark_from_deposits,
    compare_to_all_benchmarks, validate_withdrawal,
)
from calculations import (
    SHARES_PER_CONTRACT, calculate_annualized_return, calculate_assignment_cost_basis,
    calculate_cycle_pl, calculate_cycle_win_rate, calculate_moneyness, calculate_position_days_held,
    calculate_premium_cash_flow, calculate_realized_pnl, calculate_roll_net_premium,
    calculate_unrealized_pnl, validate_cash_requirement,
)

# ==============================================================================
# CONSTANTS
# ==============================================================================

TICKER_PATTERN = re.compile(r'^[A-Z]{1,5}$')
TRADE_TYPES = ('PUT', 'CALL')
TRADE_ACTIONS = ('SELL_TO_OPEN', 'BUY_TO_CLOSE')

FREE_TRADE_LIMIT = int(os.environ.get('FREE_TRADE_LIMIT', 20))
GRACE_PERIOD_STATUSES = ('canceled', 'past_due')  # Keep PRO access until subscription_ends_at

DEFAULT_EXPIRATION_WINDOW = 7  # days

# ==============================================================================
# END CONSTANTS
# ==============================================================================


class NotFoundError(LookupError):
    pass


class TradeLimitError(ValueError):
    pass


class PriceUnavailableError(RuntimeError):
    pass


def _today(today=None):
    return today or date.today()


def _now():
    return datetime.now().isoformat(timespec='seconds')


def _parse_date(value, field):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        raise ValueError(f'Invalid {field}: {value}. Use YYYY-MM-DD')


def _positive_number(value, field):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{field} must be a number')
    if number <= 0:
        raise ValueError(f'{field} must be positive')
    return number


def _non_negative_number(value, field):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{field} must be a number')
    if number < 0:
        raise ValueError(f'{field} cannot be negative')
    return number


def normalize_ticker(ticker):
    """Uppercase and validate a ticker symbol (1-5 letters)."""
    symbol = str(ticker or '').strip().upper()
    if not TICKER_PATTERN.match(symbol):
        raise ValueError(f'Invalid ticker: {ticker}. Must be 1-5 letters')
    return symbol


def _require_trade(trade_id):
    trade = database.get_trade(trade_id)
    if not trade:
        raise NotFoundError('Trade not found')
    return trade


def _require_position(position_id):
    position = database.get_position(position_id)
    if not position:
        raise NotFoundError('Position not found')
    return position


def _require_wheel(wheel_id):
    wheel = database.get_wheel(wheel_id)
    if not wheel:
        raise NotFoundError('Wheel not found')
    return wheel


def _touch_wheel(wheel_id, premium_delta=0, realized_delta=0, completed_cycle=False, conn=None):
    if not wheel_id:
        return
    wheel = database.get_wheel(wheel_id)
    if not wheel:
        return
    database.update_wheel(
        wheel_id,
        conn=conn,
        total_premiums=wheel['total_premiums'] + premium_delta,
        total_realized_pl=wheel['total_realized_pl'] + realized_delta,
        cycle_count=wheel['cycle_count'] + (1 if completed_cycle else 0),
        last_activity_at=_now(),
    )


# ==============================================================================
# TRADES
# ==============================================================================

def create_trade(user_id, data, today=None, position_id=None):
    """
    Validate and record a new option trade.

    Args:
        user_id: Owner of the trade
        data: Dict with ticker, type, action, strike_price, premium, contracts,
              expiration_date and optional open_date and notes
        today: Date used as the default open date
        position_id: Position a covered CALL is written against

    Returns:
        The stored trade dict

    Raises:
        ValueError: For invalid fields or a PUT that cash does not cover
        TradeLimitError: When a FREE user has used every trade
    """
    today = _today(today)

    ticker = normalize_ticker(data.get('ticker'))

    trade_type = str(data.get('type', '')).upper()
    if trade_type not in TRADE_TYPES:
        raise ValueError('Type must be PUT or CALL')

    action = str(data.get('action', 'SELL_TO_OPEN')).upper()
    if action not in TRADE_ACTIONS:
        raise ValueError('Action must be SELL_TO_OPEN or BUY_TO_CLOSE')

    strike_price = _positive_number(data.get('strike_price'), 'Strike price')
    premium = _positive_number(data.get('premium'), 'Premium')

    contracts = data.get('contracts')
    if isinstance(contracts, bool) or not isinstance(contracts, (int, float, str)):
        raise ValueError('Contracts must be a positive whole number')
    try:
        contracts_number = float(contracts)
    except ValueError:
        raise ValueError('Contracts must be a positive whole number')
    if contracts_number <= 0 or contracts_number != int(contracts_number):
        raise ValueError('Contracts must be a positive whole number')
    contracts = int(contracts_number)

    open_date = _parse_date(data.get('open_date') or today, 'open date')
    if not data.get('expiration_date'):
        raise ValueError('Expiration date is required')
    expiration_date = _parse_date(data['expiration_date'], 'expiration date')
    if expiration_date <= open_date:
        raise ValueError('Expiration date must be after the open date')

    usage = get_trade_usage(user_id)
    if usage['limit_reached']:
        raise TradeLimitError(
            f'Free tier limit of {FREE_TRADE_LIMIT} trades reached. Upgrade to Pro for unlimited trades.'
        )

    if trade_type == 'PUT' and action == 'SELL_TO_OPEN':
        cash_balance = get_cash_balance(user_id)
        if not validate_cash_requirement(cash_balance, strike_price, contracts):
            required = strike_price * contracts * SHARES_PER_CONTRACT
            raise ValueError(f'Insufficient cash to secure PUT: requires ${required:,.2f}, available ${cash_balance:,.2f}')

    wheel_id = None
    if position_id:
        wheel_id = database.get_position(position_id).get('wheel_id')
    if not wheel_id:
        wheel = database.get_active_wheel(user_id, ticker)
        wheel_id = wheel['id'] if wheel else None

    with database.transaction() as conn:
        trade_id = database.insert_trade({
            'user_id': user_id,
            'ticker': ticker,
            'type': trade_type,
            'action': action,
            'status': 'OPEN',
            'strike_price': strike_price,
            'premium': premium,
            'contracts': contracts,
            'shares': contracts * SHARES_PER_CONTRACT,
            'open_date': open_date.strftime('%Y-%m-%d'),
            'expiration_date': expiration_date.strftime('%Y-%m-%d'),
            'notes': data.get('notes'),
            'position_id': position_id,
            'wheel_id': wheel_id,
        }, conn=conn)
        _touch_wheel(wheel_id, premium_delta=calculate_premium_cash_flow(action, premium), conn=conn)

    print(f"SUCCESS: Recorded {action} {contracts}x {ticker} {trade_type} ${strike_price:g}")
    return database.get_trade(trade_id)


def assign_put(trade_id, today=None):
    """
    Take assignment of a PUT: the trade becomes ASSIGNED and shares are bought.

    The new position's cost basis is the strike net of the PUT premium.

    Returns:
        The created position dict
    """
    trade = _require_trade(trade_id)
    if trade['type'] != 'PUT':
        raise ValueError('Trade must be a PUT to create a position')
    if trade['status'] != 'OPEN':
        raise ValueError(f"Cannot assign {trade['status'].lower()} trade. Only OPEN trades can be assigned.")

    day = _today(today).strftime('%Y-%m-%d')
    cost_basis, total_cost = calculate_assignment_cost_basis(trade['strike_price'], trade['premium'], trade['shares'])

    with database.transaction() as conn:
        database.update_trade(trade_id, conn=conn, status='ASSIGNED', close_date=day)
        position_id = database.insert_position({
            'user_id': trade['user_id'],
            'ticker': trade['ticker'],
            'shares': trade['shares'],
            'cost_basis': cost_basis,
            'total_cost': total_cost,
            'acquired_date': day,
            'status': 'OPEN',
            'assignment_trade_id': trade_id,
            'wheel_id': trade['wheel_id'],
        }, conn=conn)
        _touch_wheel(trade['wheel_id'], conn=conn)

    return database.get_position(position_id)


def assign_call(trade_id, today=None):
    """
    Shares called away: close the covered CALL's position and finish the cycle.

    Realized = Strike * Shares + PUT Premium + CALL Premium - Total Cost

    Returns:
        Dict with the closed position and realized_gain_loss
    """
    trade = _require_trade(trade_id)
    if trade['type'] != 'CALL':
        raise ValueError('Trade must be a CALL to close a position')
    if trade['status'] != 'OPEN':
        raise ValueError(f"Cannot assign {trade['status'].lower()} trade. Only OPEN trades can be assigned.")
    if not trade['position_id']:
        raise ValueError('Trade is not linked to a position. CALL must be a covered call.')

    position = _require_position(trade['position_id'])
    if position['status'] != 'OPEN':
        raise ValueError(f"Position is already {position['status'].lower()}")

    put_premium = 0
    if position['assignment_trade_id']:
        put = database.get_trade(position['assignment_trade_id'])
        put_premium = put['premium'] if put else 0

    realized = calculate_realized_pnl(
        position['total_cost'],
        trade['strike_price'] * trade['shares'],
        put_premium,
        trade['premium'],
    )['realized_pnl']

    day = _today(today).strftime('%Y-%m-%d')
    with database.transaction() as conn:
        database.update_trade(trade_id, conn=conn, status='ASSIGNED', close_date=day)
        database.update_position(
            position['id'], conn=conn, status='CLOSED', closed_date=day, realized_gain_loss=realized,
        )
        _touch_wheel(
            position['wheel_id'] or trade['wheel_id'], realized_delta=realized, completed_cycle=True, conn=conn,
        )

    return {'position': database.get_position(position['id']), 'realized_gain_loss': realized}


def sell_covered_call(position_id, data, today=None):
    """Write a CALL against an open position whose shares cover the contracts."""
    position = _require_position(position_id)
    if position['status'] != 'OPEN':
        raise ValueError(f"Position is already {position['status'].lower()}")

    call = dict(data)
    call.update({'ticker': position['ticker'], 'type': 'CALL', 'action': 'SELL_TO_OPEN'})

    try:
        contracts = int(call.get('contracts') or 0)
    except (TypeError, ValueError):
        raise ValueError('Contracts must be a positive whole number')
    if contracts * SHARES_PER_CONTRACT > position['shares']:
        raise ValueError(f"Position holds {position['shares']} shares, not enough to cover {contracts} contracts")

    if any(t['type'] == 'CALL' and t['status'] == 'OPEN' for t in database.list_trades_for_position(position_id)):
        raise ValueError('Position already has an open covered CALL. Close, roll or let it expire first.')

    return create_trade(position['user_id'], call, today=today, position_id=position_id)


def mark_expired(trade_id, today=None):
    trade = _require_trade(trade_id)
    if trade['status'] != 'OPEN':
        raise ValueError(f"Cannot expire {trade['status'].lower()} trade. Only OPEN trades can be expired.")
    with database.transaction() as conn:
        database.update_trade(trade_id, conn=conn, status='EXPIRED', close_date=_today(today).strftime('%Y-%m-%d'))
        _touch_wheel(trade['wheel_id'], conn=conn)
    return database.get_trade(trade_id)


def mark_assigned(trade_id, today=None):
    """Assign an OPEN trade, routing PUTs and CALLs to their own workflow."""
    trade = _require_trade(trade_id)
    if trade['type'] == 'PUT':
        return {'position': assign_put(trade_id, today)}
    return assign_call(trade_id, today)


def batch_mark_expired(trade_ids, today=None):
    """
    Expire several trades; each failure is reported instead of aborting the batch.

    Returns:
        Dict with expired ids and failed [{id, error}]
    """
    expired = []
    failed = []
    for trade_id in trade_ids:
        try:
            mark_expired(trade_id, today)
            expired.append(trade_id)
        except (LookupError, ValueError) as e:
            failed.append({'id': trade_id, 'error': str(e)})
    return {'expired': expired, 'failed': failed}


def close_trade(trade_id, close_premium, today=None):
    """Buy an OPEN option back for close_premium dollars."""
    trade = _require_trade(trade_id)
    if trade['status'] != 'OPEN':
        raise ValueError(f"Cannot close {trade['status'].lower()} trade. Only OPEN trades can be closed.")
    close_premium = _non_negative_number(close_premium, 'Close premium')

    with database.transaction() as conn:
        database.update_trade(
            trade_id,
            conn=conn,
            status='CLOSED',
            close_date=_today(today).strftime('%Y-%m-%d'),
            close_premium=close_premium,
        )
        _touch_wheel(trade['wheel_id'], premium_delta=-close_premium, conn=conn)
    return database.get_trade(trade_id)


def roll_option(trade_id, new_strike, new_expiration, close_premium, open_premium, today=None, notes=None):
    """
    Close an OPEN sold option and reopen it at a new strike and expiration.

    The new trade keeps the contracts, position and wheel of the old one and
    points back to it through rolled_from_id.

    Returns:
        Dict with closed_trade, new_trade and net_premium (credit positive)
    """
    trade = _require_trade(trade_id)
    if trade['status'] != 'OPEN':
        raise ValueError(f"Cannot roll {trade['status'].lower()} trade. Only OPEN trades can be rolled.")
    if trade['action'] != 'SELL_TO_OPEN':
        raise ValueError('Can only roll SELL_TO_OPEN trades')

    today = _today(today)
    new_strike = _positive_number(new_strike, 'New strike price')
    open_premium = _positive_number(open_premium, 'Open premium')
    close_premium = _non_negative_number(close_premium, 'Close premium')
    new_expiration = _parse_date(new_expiration, 'new expiration date')
    if new_expiration <= today:
        raise ValueError('New expiration date must be in the future')

    day = today.strftime('%Y-%m-%d')
    net_premium = calculate_roll_net_premium(close_premium, open_premium)

    with database.transaction() as conn:
        database.update_trade(trade_id, conn=conn, status='CLOSED', close_date=day, close_premium=close_premium)
        new_trade_id = database.insert_trade({
            'user_id': trade['user_id'],
            'ticker': trade['ticker'],
            'type': trade['type'],
            'action': 'SELL_TO_OPEN',
            'status': 'OPEN',
            'strike_price': new_strike,
            'premium': open_premium,
            'contracts': trade['contracts'],
            'shares': trade['shares'],
            'open_date': day,
            'expiration_date': new_expiration.strftime('%Y-%m-%d'),
            'notes': f'Roll open: {notes}' if notes else 'Opened as part of roll',
            'position_id': trade['position_id'],
            'wheel_id': trade['wheel_id'],
            'rolled_from_id': trade_id,
        }, conn=conn)
        _touch_wheel(trade['wheel_id'], premium_delta=net_premium, conn=conn)

    return {
        'closed_trade': database.get_trade(trade_id),
        'new_trade': database.get_trade(new_trade_id),
        'net_premium': net_premium,
    }


def get_upcoming_expirations(user_id, days=DEFAULT_EXPIRATION_WINDOW, today=None):
    """OPEN trades expiring within `days` days, soonest first, with days_until_expiration."""
    today = _today(today)
    cutoff = today + timedelta(days=days)

    upcoming = []
    for trade in database.list_trades(user_id, status='OPEN'):
        expiration = _parse_date(trade['expiration_date'], 'expiration date')
        if today <= expiration <= cutoff:
            trade['days_until_expiration'] = (expiration - today).days
            upcoming.append(trade)

    upcoming.sort(key=lambda t: (t['expiration_date'], t['ticker']))
    return upcoming


def get_active_tickers(user_id):
    """SPY plus every ticker with an open trade or open position."""
    tickers = {'SPY'}
    tickers.update(p['ticker'] for p in database.list_positions(user_id, status='OPEN'))
    tickers.update(t['ticker'] for t in database.list_trades(user_id, status='OPEN'))
    return sorted(tickers)


# ==============================================================================
# END TRADES
# ==============================================================================


# ==============================================================================
# NOTIFICATIONS
# ==============================================================================

def get_itm_options(user_id):
    """
    OPEN options that are in the money at the latest stock price.

    A PUT is ITM below its strike, a CALL above it. Tickers whose price
    cannot be fetched are skipped.

    Returns:
        List of trade dicts with current_price and intrinsic_value
        (per-share intrinsic * contracts * 100)
    """
    trades = database.list_trades(user_id, status='OPEN')
    if not trades:
        return []

    prices = {}
    for ticker in sorted({t['ticker'] for t in trades}):
        latest = market_data.get_latest_price(ticker)
        if latest['success']:
            prices[ticker] = latest['price']
        else:
            print(f"WARNING: No current price for {ticker}: {latest['error']}")

    itm = []
    for trade in trades:
        current_price = prices.get(trade['ticker'])
        if current_price is None:
            continue
        intrinsic = calculate_moneyness(trade['type'], current_price, trade['strike_price'])['intrinsic_value']
        if intrinsic > 0:
            trade['current_price'] = current_price
            trade['intrinsic_value'] = intrinsic * trade['contracts'] * SHARES_PER_CONTRACT
            itm.append(trade)
    return itm


def get_positions_without_calls(user_id):
    """OPEN positions with no OPEN covered CALL, newest first, marked at the cached price."""
    positions = database.list_positions(user_id, status='OPEN')
    prices = database.get_cached_prices({p['ticker'] for p in positions})

    uncovered = []
    for position in positions:
        trades = database.list_trades_for_position(position['id'])
        if any(t['type'] == 'CALL' and t['status'] == 'OPEN' for t in trades):
            continue
        price = prices.get(position['ticker'])
        position['current_value'] = price * position['shares'] if price is not None else None
        uncovered.append(position)

    uncovered.sort(key=lambda p: p['acquired_date'], reverse=True)
    return uncovered


# ==============================================================================
# END NOTIFICATIONS
# ==============================================================================


# ==============================================================================
# WHEELS
# ==============================================================================

def create_wheel(user_id, ticker, notes=None):
    ticker = normalize_ticker(ticker)
    if database.get_active_wheel(user_id, ticker):
        raise ValueError(
            f'An active wheel already exists for {ticker}. Please pause or complete it before starting a new one.'
        )

    now = _now()
    wheel_id = database.insert_wheel({
        'user_id': user_id,
        'ticker': ticker,
        'status': 'ACTIVE',
        'started_at': now,
        'last_activity_at': now,
        'notes': notes,
    })
    return database.get_wheel(wheel_id)


def pause_wheel(wheel_id):
    wheel = _require_wheel(wheel_id)
    if wheel['status'] != 'ACTIVE':
        raise ValueError(f"Cannot pause {wheel['status'].lower()} wheel. Only ACTIVE wheels can be paused.")
    database.update_wheel(wheel_id, status='PAUSED', last_activity_at=_now())
    return database.get_wheel(wheel_id)


def complete_wheel(wheel_id):
    wheel = _require_wheel(wheel_id)
    if wheel['status'] == 'COMPLETED':
        raise ValueError('Wheel is already completed.')
    now = _now()
    database.update_wheel(wheel_id, status='COMPLETED', completed_at=now, last_activity_at=now)
    return database.get_wheel(wheel_id)


def get_wheel_detail(wheel_id, today=None):
    """
    A wheel with its trades, positions and cycle metrics.

    Deployed capital = strike * shares of open PUTs + total cost of open positions.
    Each closed position is one completed cycle.
    """
    wheel = _require_wheel(wheel_id)
    trades = database.list_trades_for_wheel(wheel_id)
    positions = [p for p in database.list_positions(wheel['user_id']) if p['wheel_id'] == wheel_id]

    open_put_capital = sum(
        t['strike_price'] * t['shares'] for t in trades if t['status'] == 'OPEN' and t['type'] == 'PUT'
    )
    open_position_capital = sum(p['total_cost'] for p in positions if p['status'] == 'OPEN')

    cycle_pls = []
    for position in positions:
        if position['status'] != 'CLOSED':
            continue
        put = next((t for t in trades if t['id'] == position['assignment_trade_id']), None)
        calls = [t['premium'] for t in trades if t['position_id'] == position['id'] and t['type'] == 'CALL']
        cycle_pls.append(calculate_cycle_pl(put['premium'] if put else 0, calls, position['realized_gain_loss']))

    capital = max([p['total_cost'] for p in positions] or [0])
    days_active = calculate_position_days_held(wheel['started_at'], wheel.get('completed_at'), today)

    wheel['trades'] = list(reversed(trades))
    wheel['positions'] = sorted(positions, key=lambda p: p['acquired_date'], reverse=True)
    wheel['deployed_capital'] = open_put_capital + open_position_capital
    wheel['cycle_pls'] = cycle_pls
    wheel['win_rate'] = calculate_cycle_win_rate(cycle_pls)
    wheel['annualized_return'] = calculate_annualized_return(wheel['total_realized_pl'], capital, days_active)
    return wheel


# ==============================================================================
# END WHEELS
# ==============================================================================


# ==============================================================================
# CASH DEPOSITS AND BENCHMARKS
# ==============================================================================

def _validate_cash_flow(amount, flow_date, today):
    amount = _positive_number(amount, 'Amount')
    flow_date = _parse_date(flow_date or today, 'date')
    if flow_date > today:
        raise ValueError('Date cannot be in the future')
    return amount, flow_date


def _spy_price(flow_date, today):
    price = market_data.get_spy_price_for_date(flow_date, today)
    if price is None:
        raise PriceUnavailableError(f"Failed to fetch SPY price for {flow_date.strftime('%Y-%m-%d')}")
    return price


def _record_cash_flow(user_id, flow_type, amount, flow_date, spy_price, notes):
    signed_amount, signed_shares = calculate_deposit_spy_shares(amount, spy_price, flow_type)
    deposit_id = database.insert_deposit({
        'user_id': user_id,
        'amount': signed_amount,
        'type': flow_type,
        'deposit_date': flow_date.strftime('%Y-%m-%d'),
        'notes': notes,
        'spy_price': spy_price,
        'spy_shares': signed_shares,
    })
    refresh_spy_benchmark(user_id)
    return database.get_deposit(deposit_id)


def record_deposit(user_id, amount, deposit_date=None, notes=None, today=None):
    """Record a cash deposit and the SPY shares it would have bought."""
    today = _today(today)
    amount, deposit_date = _validate_cash_flow(amount, deposit_date, today)
    spy_price = _spy_price(deposit_date, today)
    return _record_cash_flow(user_id, DEPOSIT, amount, deposit_date, spy_price, notes)


def record_withdrawal(user_id, amount, withdrawal_date=None, notes=None, today=None):
    """Record a withdrawal; it may not exceed what has been invested."""
    today = _today(today)
    amount, withdrawal_date = _validate_cash_flow(amount, withdrawal_date, today)
    validate_withdrawal(amount, database.list_deposits(user_id))
    spy_price = _spy_price(withdrawal_date, today)
    return _record_cash_flow(user_id, WITHDRAWAL, amount, withdrawal_date, spy_price, notes)


def delete_deposit(user_id, deposit_id):
    deposit = database.get_deposit(deposit_id)
    if not deposit or deposit['user_id'] != user_id:
        raise NotFoundError('Deposit not found')
    database.delete_deposit(deposit_id)
    refresh_spy_benchmark(user_id)
    return deposit


def refresh_spy_benchmark(user_id):
    """Rebuild the SPY benchmark row from the deposit history."""
    derived = calculate_spy_benchmark_from_deposits(database.list_deposits(user_id))
    if derived is None:
        database.delete_benchmark(user_id, 'SPY')
        return None
    database.upsert_benchmark(
        user_id,
        'SPY',
        derived['initial_capital'],
        derived['setup_date'],
        derived['initial_price'],
        derived['shares'],
    )
    return database.get_benchmark(user_id, 'SPY')


def setup_benchmark(user_id, ticker, initial_capital, setup_date=None, today=None):
    """Track a buy-and-hold of `ticker` bought with initial_capital on setup_date."""
    today = _today(today)
    ticker = normalize_ticker(ticker)
    initial_capital = _positive_number(initial_capital, 'Initial capital')
    setup_date = _parse_date(setup_date or today, 'setup date')
    if setup_date > today:
        raise ValueError('Setup date cannot be in the future')

    initial_price = market_data.get_price_for_date(ticker, setup_date, today)
    if initial_price is None:
        raise PriceUnavailableError(f"Failed to fetch {ticker} price for {setup_date.strftime('%Y-%m-%d')}")

    shares = calculate_benchmark_shares(initial_capital, initial_price)
    database.upsert_benchmark(user_id, ticker, initial_capital, setup_date.strftime('%Y-%m-%d'), initial_price, shares)
    return database.get_benchmark(user_id, ticker)


def get_portfolio_performance(user_id):
    """
    Wheel strategy results in the shape benchmark comparison expects.

    Capital is net invested cash when deposits exist, otherwise the capital
    held in open positions.
    """
    positions = database.list_positions(user_id)
    prices = database.get_cached_prices({p['ticker'] for p in positions})

    realized = sum(p['realized_gain_loss'] or 0 for p in positions if p['status'] == 'CLOSED')
    unrealized = 0
    capital_deployed = 0
    for position in positions:
        if position['status'] != 'OPEN':
            continue
        capital_deployed += position['total_cost']
        marked = calculate_unrealized_pnl(position['shares'], position['total_cost'], prices.get(position['ticker']))
        if marked:
            unrealized += marked['unrealized_pnl']

    deposits = database.list_deposits(user_id)
    capital = sum(d['amount'] for d in deposits) if deposits else capital_deployed
    total_pnl = realized + unrealized

    return {
        'total_pnl': total_pnl,
        'return_percent': (total_pnl / capital) * 100 if capital > 0 else 0,
        'capital_deployed': capital,
    }


def get_benchmark_comparison(user_id):
    """Compare the wheel results with every tracked benchmark marked to its latest price."""
    portfolio = get_portfolio_performance(user_id)

    metrics = []
    for bench in database.list_benchmarks(user_id):
        latest = market_data.get_latest_price(bench['ticker'])
        if not latest['success']:
            print(f"WARNING: No current price for benchmark {bench['ticker']}: {latest['error']}")
            continue
        metrics.append(calculate_benchmark_metrics(bench, latest['price']))

    return compare_to_all_benchmarks(portfolio, metrics)


# ==============================================================================
# END CASH DEPOSITS AND BENCHMARKS
# ==============================================================================


# ==============================================================================
# ACCOUNT
# ==============================================================================

def has_pro_access(user, now=None):
    """PRO tier, or a canceled/past_due subscription still inside its paid period."""
    if user['subscription_tier'] == 'PRO':
        return True
    if user.get('subscription_status') in GRACE_PERIOD_STATUSES and user.get('subscription_ends_at'):
        ends_at = datetime.fromisoformat(user['subscription_ends_at'])
        if ends_at.tzinfo is None:
            ends_at = ends_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return ends_at > now
    return False


def get_trade_usage(user_id, now=None):
    """
    Lifetime trade count against the tier limit.

    Returns:
        Dict with trades_used, trade_limit, tier, remaining and limit_reached
        trade_limit and remaining are None (unlimited) for PRO access
    """
    user = database.get_user(user_id)
    if not user:
        raise NotFoundError('User not found')

    trades_used = database.count_trades(user_id)
    if has_pro_access(user, now):
        return {
            'trades_used': trades_used,
            'trade_limit': None,
            'tier': 'PRO',
            'remaining': None,
            'limit_reached': False,
        }

    return {
        'trades_used': trades_used,
        'trade_limit': FREE_TRADE_LIMIT,
        'tier': user['subscription_tier'],
        'remaining': max(0, FREE_TRADE_LIMIT - trades_used),
        'limit_reached': trades_used >= FREE_TRADE_LIMIT,
    }


def get_cash_balance(user_id):
    """
    Cash on hand for securing new PUTs.

    Cash = Net Invested + Premiums Sold - Close Premiums - Premiums Bought
           - Shares Bought (assigned PUTs) + Shares Sold (assigned CALLs)
           - Cash Securing Open PUTs

    Returns None when no deposits are recorded.
    """
    deposits = database.list_deposits(user_id)
    if not deposits:
        return None

    trades = database.list_trades(user_id)
    premiums = sum(calculate_premium_cash_flow(t['action'], t['premium'], t['close_premium']) for t in trades)

    assigned = [t for t in trades if t['status'] == 'ASSIGNED']
    shares_bought = sum(t['strike_price'] * t['shares'] for t in assigned if t['type'] == 'PUT')
    shares_sold = sum(t['strike_price'] * t['shares'] for t in assigned if t['type'] == 'CALL')

    secured = sum(
        t['strike_price'] * t['shares'] for t in trades
        if t['status'] == 'OPEN' and t['type'] == 'PUT' and t['action'] == 'SELL_TO_OPEN'
    )
    return sum(d['amount'] for d in deposits) + premiums - shares_bought + shares_sold - secured


# ==============================================================================
# END ACCOUNT
# ==============================================================================


# ==============================================================================
# WATCHLIST
# ==============================================================================

def add_to_watchlist(user_id, ticker):
    ticker = normalize_ticker(ticker)
    if not database.add_watchlist_ticker(user_id, ticker):
        raise ValueError(f'{ticker} is already on the watchlist')
    return ticker


def remove_from_watchlist(user_id, ticker):
    ticker = normalize_ticker(ticker)
    if not database.remove_watchlist_ticker(user_id, ticker):
        raise NotFoundError(f'{ticker} is not on the watchlist')
    return ticker


def get_watchlist(user_id):
    return database.list_watchlist(user_id)


# ==============================================================================
# END WATCHLIST
# ==============================================================================
