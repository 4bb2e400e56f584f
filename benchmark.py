from datetime import date, datetime

# ==============================================================================
# CONSTANTS
# ==============================================================================

DEPOSIT = 'DEPOSIT'
WITHDRAWAL = 'WITHDRAWAL'
TIE_TOLERANCE = 0.01  # Dollar difference below which DCA and lump sum are a tie
TRADING_DAYS_PER_YEAR = 252
DEFAULT_RISK_FREE_RATE = 0.02

# ==============================================================================
# END CONSTANTS
# ==============================================================================


def _iso(value):
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.strftime('%Y-%m-%d')
    return str(value)[:10]


# ==============================================================================
# BENCHMARK CALCULATIONS
# A benchmark is a hypothetical buy-and-hold of a ticker with the same capital
# ==============================================================================

def calculate_benchmark_shares(initial_capital, initial_price):
    """
    Shares of the benchmark ticker the capital would have bought.

    Args:
        initial_capital: Dollars invested
        initial_price: Benchmark price on the setup date

    Returns:
        Number of shares (fractional)

    Raises:
        ValueError: If initial_price is not positive

    Example:
        >>> calculate_benchmark_shares(10000, 400)
        25.0
    """
    if initial_price <= 0:
        raise ValueError('Initial price must be positive')
    return initial_capital / initial_price


def calculate_benchmark_value(shares, current_price):
    return shares * current_price


def calculate_benchmark_gain_loss(current_value, initial_capital):
    return current_value - initial_capital


def calculate_benchmark_return(gain_loss, initial_capital):
    """Return as percentage of initial capital; 0 when capital is 0 or negative."""
    if initial_capital <= 0:
        return 0
    return (gain_loss / initial_capital) * 100


def calculate_benchmark_metrics(benchmark, current_price):
    """
    Mark a stored benchmark to the current price.

    Args:
        benchmark: Dict with ticker, initial_capital, setup_date, initial_price, shares
        current_price: Latest benchmark price

    Returns:
        Dict with the stored fields plus current_price, current_value,
        gain_loss and return_percent
    """
    current_value = calculate_benchmark_value(benchmark['shares'], current_price)
    gain_loss = calculate_benchmark_gain_loss(current_value, benchmark['initial_capital'])
    return {
        'ticker': benchmark['ticker'],
        'initial_capital': benchmark['initial_capital'],
        'setup_date': benchmark['setup_date'],
        'initial_price': benchmark['initial_price'],
        'shares': benchmark['shares'],
        'current_price': current_price,
        'current_value': current_value,
        'gain_loss': gain_loss,
        'return_percent': calculate_benchmark_return(gain_loss, benchmark['initial_capital']),
    }


def compare_to_benchmark(portfolio, benchmark_metrics):
    """
    Compare wheel strategy results against one benchmark.

    Args:
        portfolio: Dict with total_pnl, return_percent and capital_deployed
        benchmark_metrics: Output of calculate_benchmark_metrics

    Returns:
        Dict with wheel_strategy, benchmark and difference sections
        outperforming is True when the wheel return beats the benchmark return

    Example:
        >>> compare_to_benchmark({'total_pnl': 1500, 'return_percent': 15, 'capital_deployed': 10000},
        ...                      {'gain_loss': 1000, 'return_percent': 10})['difference']
        {'pnl_difference': 500, 'return_difference': 5, 'outperforming': True}
    """
    return_difference = portfolio['return_percent'] - benchmark_metrics['return_percent']
    return {
        'wheel_strategy': portfolio,
        'benchmark': benchmark_metrics,
        'difference': {
            'pnl_difference': portfolio['total_pnl'] - benchmark_metrics['gain_loss'],
            'return_difference': return_difference,
            'outperforming': return_difference > 0,
        },
    }


def compare_to_all_benchmarks(portfolio, benchmarks_metrics):
    """Compare against every benchmark and pick out the best and worst by return."""
    if not benchmarks_metrics:
        return {
            'wheel_strategy': portfolio,
            'benchmarks': [],
            'comparisons': [],
            'best_benchmark': None,
            'worst_benchmark': None,
        }

    ranked = sorted(benchmarks_metrics, key=lambda b: b['return_percent'], reverse=True)
    return {
        'wheel_strategy': portfolio,
        'benchmarks': benchmarks_metrics,
        'comparisons': [compare_to_benchmark(portfolio, b) for b in benchmarks_metrics],
        'best_benchmark': ranked[0],
        'worst_benchmark': ranked[-1],
    }


# ==============================================================================
# END BENCHMARK CALCULATIONS
# ==============================================================================


# ==============================================================================
# SPY DEPOSIT BOOKKEEPING
# Every cash flow buys (or sells) SPY-equivalent shares at that day's price
# ==============================================================================

def calculate_deposit_spy_shares(amount, spy_price, deposit_type=DEPOSIT):
    """
    Signed amount and SPY shares recorded for a cash flow.

    Withdrawals are stored negative so that sums give net invested and net shares.

    Args:
        amount: Cash amount (always entered as a positive number)
        spy_price: SPY price on the flow's date
        deposit_type: 'DEPOSIT' or 'WITHDRAWAL'

    Returns:
        Tuple of (signed_amount, signed_spy_shares)

    Raises:
        ValueError: For non-positive amount or price, or an unknown type

    Example:
        >>> calculate_deposit_spy_shares(1000, 500, 'WITHDRAWAL')
        (-1000, -2.0)
    """
    if amount <= 0:
        raise ValueError('Amount must be positive')
    if spy_price <= 0:
        raise ValueError('SPY price must be positive')

    shares = amount / spy_price
    if deposit_type == DEPOSIT:
        return amount, shares
    if deposit_type == WITHDRAWAL:
        return -amount, -shares
    raise ValueError(f'Invalid deposit type: {deposit_type}')


def calculate_net_invested(deposits):
    return sum(d['amount'] for d in deposits)


def validate_withdrawal(amount, deposits):
    """Raise ValueError if the withdrawal exceeds what has been invested."""
    net_invested = calculate_net_invested(deposits)
    if amount > net_invested:
        raise ValueError(f'Cannot withdraw ${amount:g}. You have only invested ${net_invested:g} total.')
    return net_invested


def calculate_deposit_summary(deposits):
    """
    Summarize the cash flow history.

    Average Cost Basis = Net Invested / Total SPY Shares

    Returns:
        Dict with totals, counts, net_invested, total_spy_shares,
        avg_cost_basis and first/last deposit dates
    """
    if not deposits:
        return {
            'total_deposits': 0,
            'total_withdrawals': 0,
            'deposit_count': 0,
            'withdrawal_count': 0,
            'net_invested': 0,
            'total_spy_shares': 0,
            'avg_cost_basis': 0,
            'first_deposit_date': None,
            'last_deposit_date': None,
        }

    ordered = sorted(deposits, key=lambda d: _iso(d['deposit_date']))
    deposit_rows = [d for d in ordered if d['type'] == DEPOSIT]
    withdrawal_rows = [d for d in ordered if d['type'] == WITHDRAWAL]

    net_invested = calculate_net_invested(ordered)
    total_spy_shares = sum(d['spy_shares'] for d in ordered)

    return {
        'total_deposits': sum(d['amount'] for d in deposit_rows),
        'total_withdrawals': sum(abs(d['amount']) for d in withdrawal_rows),
        'deposit_count': len(deposit_rows),
        'withdrawal_count': len(withdrawal_rows),
        'net_invested': net_invested,
        'total_spy_shares': total_spy_shares,
        'avg_cost_basis': net_invested / total_spy_shares if total_spy_shares > 0 else 0,
        'first_deposit_date': _iso(ordered[0]['deposit_date']),
        'last_deposit_date': _iso(ordered[-1]['deposit_date']),
    }


def calculate_spy_benchmark_from_deposits(deposits):
    """
    Derive the SPY benchmark row from the full deposit history.

    Returns:
        Dict with shares, initial_capital, setup_date and initial_price
        Returns None if there are no deposits
    """
    if not deposits:
        return None

    ordered = sorted(deposits, key=lambda d: _iso(d['deposit_date']))
    first = ordered[0]
    return {
        'ticker': 'SPY',
        'shares': sum(d['spy_shares'] for d in ordered),
        'initial_capital': calculate_net_invested(ordered),
        'setup_date': _iso(first['deposit_date']),
        'initial_price': first['spy_price'],
    }


def preview_deposit(amount, spy_price, deposits):
    """What a deposit would add, without recording it."""
    _, shares = calculate_deposit_spy_shares(amount, spy_price, DEPOSIT)
    net_invested = calculate_net_invested(deposits)
    total_shares = sum(d['spy_shares'] for d in deposits)
    return {
        'amount': amount,
        'spy_price': spy_price,
        'spy_shares': shares,
        'net_invested_after': net_invested + amount,
        'total_spy_shares_after': total_shares + shares,
    }


def preview_withdrawal(amount, spy_price, deposits):
    """What a withdrawal would remove, without recording it."""
    net_invested = validate_withdrawal(amount, deposits)
    _, shares = calculate_deposit_spy_shares(amount, spy_price, WITHDRAWAL)
    total_shares = sum(d['spy_shares'] for d in deposits)
    return {
        'amount': amount,
        'spy_price': spy_price,
        'spy_shares': shares,
        'net_invested': net_invested,
        'remaining': net_invested - amount,
        'total_spy_shares_after': total_shares + shares,
    }


# ==============================================================================
# END SPY DEPOSIT BOOKKEEPING
# ==============================================================================


# ==============================================================================
# LUMP SUM COMPARISON
# Compare what the deposits became against investing the same total at once
# ==============================================================================

def calculate_lump_sum_comparison(deposits, lump_sum_date, lump_sum_price, current_price):
    """
    Compare dollar-cost averaging (the actual deposits) with a lump sum.

    Lump sum invests the same net capital on lump_sum_date at lump_sum_price.
    Difference = DCA Value - Lump Sum Value (positive means DCA won)

    Args:
        deposits: Deposit dicts (amount, spy_shares, spy_price, deposit_date)
        lump_sum_date: Date the hypothetical lump sum is invested
        lump_sum_price: SPY price on that date
        current_price: Current SPY price

    Returns:
        Dict with DCA and lump sum totals, returns, difference, winner and data_points

    Raises:
        ValueError: If there are no deposits or a price is not positive

    Example:
        >>> result = calculate_lump_sum_comparison(
        ...     [{'amount': 1000, 'spy_shares': 2.5, 'spy_price': 400, 'deposit_date': '2024-01-02'}],
        ...     '2024-01-02', 400, 500)
        >>> result['winner']
        'TIE'
    """
    if not deposits:
        raise ValueError('No deposits to compare')
    if lump_sum_price <= 0 or current_price <= 0:
        raise ValueError('SPY prices must be positive')

    ordered = sorted(deposits, key=lambda d: _iso(d['deposit_date']))

    dca_shares = sum(d['spy_shares'] for d in ordered)
    dca_invested = calculate_net_invested(ordered)
    dca_value = dca_shares * current_price
    dca_return = dca_value - dca_invested
    dca_return_pct = (dca_return / dca_invested) * 100 if dca_invested != 0 else 0

    lump_sum_invested = dca_invested
    lump_sum_shares = lump_sum_invested / lump_sum_price
    lump_sum_value = lump_sum_shares * current_price
    lump_sum_return = lump_sum_value - lump_sum_invested
    lump_sum_return_pct = (lump_sum_return / lump_sum_invested) * 100 if lump_sum_invested != 0 else 0

    difference = dca_value - lump_sum_value
    difference_pct = (difference / lump_sum_value) * 100 if lump_sum_value != 0 else 0

    if abs(difference) < TIE_TOLERANCE:
        winner = 'TIE'
    elif difference > 0:
        winner = 'DCA'
    else:
        winner = 'LUMP_SUM'

    return {
        'dca_shares': dca_shares,
        'dca_invested': dca_invested,
        'dca_current_value': dca_value,
        'dca_return': dca_return,
        'dca_return_pct': dca_return_pct,
        'lump_sum_shares': lump_sum_shares,
        'lump_sum_invested': lump_sum_invested,
        'lump_sum_current_value': lump_sum_value,
        'lump_sum_return': lump_sum_return,
        'lump_sum_return_pct': lump_sum_return_pct,
        'difference': difference,
        'difference_pct': difference_pct,
        'timing_benefit': difference,
        'timing_benefit_pct': difference_pct,
        'winner': winner,
        'data_points': _comparison_data_points(ordered, lump_sum_date, lump_sum_shares, current_price),
        'lump_sum_date': _iso(lump_sum_date),
        'first_deposit_date': _iso(ordered[0]['deposit_date']),
        'last_deposit_date': _iso(ordered[-1]['deposit_date']),
    }


def _comparison_data_points(ordered_deposits, lump_sum_date, lump_sum_shares, current_price):
    points = []
    total_invested = calculate_net_invested(ordered_deposits)

    if _iso(lump_sum_date) < _iso(ordered_deposits[0]['deposit_date']):
        points.append({
            'date': _iso(lump_sum_date),
            'dca_value': 0,
            'lump_sum_value': total_invested,
            'dca_shares': 0,
            'dca_invested': 0,
        })

    dca_shares = 0
    dca_invested = 0
    for deposit in ordered_deposits:
        dca_shares += deposit['spy_shares']
        dca_invested += deposit['amount']
        points.append({
            'date': _iso(deposit['deposit_date']),
            'dca_value': dca_shares * deposit['spy_price'],
            'lump_sum_value': lump_sum_shares * deposit['spy_price'],
            'dca_shares': dca_shares,
            'dca_invested': dca_invested,
        })

    points.append({
        'date': _iso(date.today()),
        'dca_value': dca_shares * current_price,
        'lump_sum_value': lump_sum_shares * current_price,
        'dca_shares': dca_shares,
        'dca_invested': dca_invested,
    })
    return points


def calculate_what_if(deposits, lump_sum_date, lump_sum_price, current_price):
    """What if everything had been invested on lump_sum_date? Same contract as the comparison."""
    return calculate_lump_sum_comparison(deposits, lump_sum_date, lump_sum_price, current_price)


# ==============================================================================
# END LUMP SUM COMPARISON
# ==============================================================================


# ==============================================================================
# SERIES ANALYTICS
# Risk and return metrics over a daily value series
# ==============================================================================

def calculate_total_return_percent(initial_value, final_value):
    """
    Total return as a percentage of the starting value.

    Returns 0 if initial_value is 0 or negative.

    Example:
        >>> calculate_total_return_percent(8000, 9200)
        15.0
    """
    if initial_value <= 0:
        return 0
    return (final_value / initial_value - 1) * 100


def calculate_cagr(initial_value, final_value, num_days):
    """
    Compound annual growth rate over a calendar-day span.

    CAGR = (Final / Initial)^(365 / days) - 1

    Args:
        initial_value: Starting value (or capital invested)
        final_value: Ending value
        num_days: Calendar days between the two

    Returns:
        CAGR as percentage; 0 for non-positive inputs
    """
    if initial_value <= 0 or final_value <= 0 or num_days <= 0:
        return 0
    return ((final_value / initial_value) ** (365.0 / num_days) - 1) * 100


def calculate_daily_returns(values):
    """
    Day-over-day simple returns. The first entry is always 0.

    Example:
        >>> calculate_daily_returns([400, 404, 399.96])
        [0, 0.01, -0.01]
    """
    if len(values) < 2:
        return [0]
    returns = [0]
    for previous, current in zip(values, values[1:]):
        returns.append((current - previous) / previous if previous > 0 else 0)
    return returns


def _population_std(returns):
    mean = sum(returns) / len(returns)
    return (sum((r - mean) ** 2 for r in returns) / len(returns)) ** 0.5


def calculate_volatility(daily_returns):
    """Annualized volatility (population std dev * sqrt(252)) as percentage."""
    if len(daily_returns) < 2:
        return 0
    return _population_std(daily_returns) * (TRADING_DAYS_PER_YEAR ** 0.5) * 100


def calculate_sharpe_ratio(cagr, volatility, risk_free_rate=DEFAULT_RISK_FREE_RATE):
    """
    Sharpe ratio from annualized figures.

    Cash flows distort daily returns of a deposit-funded account, so the
    excess return comes from CAGR rather than the mean daily return.

    Args:
        cagr: Annualized return as percentage
        volatility: Annualized volatility as percentage
        risk_free_rate: Annual risk-free rate as decimal

    Returns:
        Sharpe ratio; 0 when volatility is 0
    """
    if volatility == 0:
        return 0
    return (cagr / 100 - risk_free_rate) / (volatility / 100)


def calculate_max_drawdown(values):
    """
    Largest peak-to-trough decline.

    Returns:
        Tuple of (drawdown_percent, peak_index, trough_index)
        drawdown_percent is negative or 0

    Example:
        >>> calculate_max_drawdown([100, 120, 90, 130])
        (-25.0, 1, 2)
    """
    if len(values) < 2:
        return 0, 0, 0

    worst = 0
    peak = values[0]
    peak_idx = 0
    worst_peak_idx = 0
    worst_trough_idx = 0

    for i, value in enumerate(values):
        if value > peak:
            peak = value
            peak_idx = i
        if peak > 0 and (value - peak) / peak < worst:
            worst = (value - peak) / peak
            worst_peak_idx = peak_idx
            worst_trough_idx = i

    return worst * 100, worst_peak_idx, worst_trough_idx


def calculate_calmar_ratio(cagr, max_drawdown):
    """CAGR per unit of worst drawdown; 0 when there was no drawdown."""
    if max_drawdown >= 0:
        return 0
    return cagr / abs(max_drawdown)


def calculate_alpha_beta(returns, reference_returns):
    """
    Alpha and beta of one daily return series against another.

    Beta = Cov(returns, reference) / Var(reference)
    Alpha = (mean return - beta * mean reference return) * 252

    Args:
        returns: Daily returns (first entry is the 0 placeholder)
        reference_returns: Daily returns of the reference, same length

    Returns:
        Tuple of (alpha_pct, beta); (0, 1.0) when the series are unusable
    """
    if len(returns) < 2 or len(returns) != len(reference_returns):
        return 0, 1.0

    series = returns[1:]
    reference = reference_returns[1:]
    mean = sum(series) / len(series)
    reference_mean = sum(reference) / len(reference)

    covariance = sum((r - mean) * (b - reference_mean) for r, b in zip(series, reference)) / len(series)
    variance = sum((b - reference_mean) ** 2 for b in reference) / len(reference)
    if variance == 0:
        return 0, 1.0

    beta = covariance / variance
    alpha = (mean - beta * reference_mean) * TRADING_DAYS_PER_YEAR * 100
    return alpha, beta


def build_benchmark_history(deposits, spy_history, today=None):
    """
    Daily value of the SPY-equivalent account built from the deposits.

    Each deposit's shares join the account on its deposit date; the account
    is valued at every SPY close from the first deposit onward.

    Args:
        deposits: Deposit dicts (deposit_date, amount, spy_shares)
        spy_history: pandas DataFrame from fetch_stock_data (string index, 'Close')
        today: Last date to include (defaults to date.today())

    Returns:
        Dict with dates, values, invested and closes lists (all same length)
    """
    history = {'dates': [], 'values': [], 'invested': [], 'closes': []}
    if not deposits or spy_history is None or spy_history.empty:
        return history

    ordered = sorted(deposits, key=lambda d: _iso(d['deposit_date']))
    first_date = _iso(ordered[0]['deposit_date'])
    last_date = _iso(today or date.today())

    shares = 0
    invested = 0
    next_deposit = 0

    for day, close in spy_history['Close'].items():
        if day < first_date or day > last_date:
            continue
        while next_deposit < len(ordered) and _iso(ordered[next_deposit]['deposit_date']) <= day:
            shares += ordered[next_deposit]['spy_shares']
            invested += ordered[next_deposit]['amount']
            next_deposit += 1

        history['dates'].append(day)
        history['values'].append(float(shares * close))
        history['invested'].append(invested)
        history['closes'].append(float(close))

    return history


def summarize_benchmark_history(history, comparison_closes=None):
    """
    Headline analytics for a benchmark history.

    Return and CAGR compare the final value with net invested capital. Risk
    metrics use the SPY close series, which is what each benchmark share tracks.
    When comparison_closes (aligned to history['dates']) is given, alpha and
    beta of SPY against that series are included.
    """
    if len(history['dates']) < 2:
        summary = {
            'total_return': 0,
            'cagr': 0,
            'volatility': 0,
            'max_drawdown': 0,
            'sharpe_ratio': 0,
            'calmar_ratio': 0,
        }
        if comparison_closes is not None:
            summary['alpha'] = 0
            summary['beta'] = 1.0
        return summary

    final_value = history['values'][-1]
    final_invested = history['invested'][-1]
    first = datetime.strptime(history['dates'][0], '%Y-%m-%d')
    last = datetime.strptime(history['dates'][-1], '%Y-%m-%d')

    total_return = calculate_total_return_percent(final_invested, final_value)
    cagr = calculate_cagr(final_invested, final_value, (last - first).days)
    spy_returns = calculate_daily_returns(history['closes'])
    volatility = calculate_volatility(spy_returns)
    max_drawdown, _, _ = calculate_max_drawdown(history['closes'])

    summary = {
        'total_return': round(total_return, 2),
        'cagr': round(cagr, 2),
        'volatility': round(volatility, 2),
        'max_drawdown': round(max_drawdown, 2),
        'sharpe_ratio': round(calculate_sharpe_ratio(cagr, volatility), 2),
        'calmar_ratio': round(calculate_calmar_ratio(cagr, max_drawdown), 2),
    }

    if comparison_closes is not None:
        alpha, beta = calculate_alpha_beta(spy_returns, calculate_daily_returns(list(comparison_closes)))
        summary['alpha'] = round(alpha, 2)
        summary['beta'] = round(beta, 2)

    return summary


# ==============================================================================
# END SERIES ANALYTICS
# ==============================================================================
