from flask import Flask, Response, request, jsonify
import requests
import os
from datetime import date, datetime, timedelta

import database
import market_data
import trading
import webhooks
from benchmark import (
    DEPOSIT, WITHDRAWAL, build_benchmark_history, calculate_deposit_summary,
    calculate_lump_sum_comparison, calculate_what_if, preview_deposit, preview_withdrawal,
    summarize_benchmark_history,
)
from black_scholes import compute_iv, dte_to_years
from calculations import (
    calculate_moneyness, calculate_portfolio_metrics, calculate_position_days_held,
    calculate_ticker_performances, get_best_and_worst_performers, suggest_call_strike,
)
from exports import build_deposits_csv, build_pl_report_csv, generate_export_filename
from profit_loss import (
    TIMEFRAMES, calculate_dashboard_metrics, calculate_pl_by_ticker, calculate_pl_over_time,
    calculate_pnl_by_timeframe, calculate_portfolio_stats, calculate_position_unrealized,
    calculate_realized_pnl_by_ticker, calculate_unrealized_pnl_by_ticker, calculate_win_rate_data,
    get_time_range_threshold, get_timeframe_start, merge_pnl_by_ticker, positions_since,
)
from scanner import run_full_scan

app = Flask(__name__)

# ==============================================================================
# CONSTANTS
# ==============================================================================

API_VERSION = '0.1.0'
MAX_EXPIRATION_WINDOW = 365  # days
BENCHMARK_TOP_PERFORMERS = 5

# ==============================================================================
# END CONSTANTS
# ==============================================================================

_database_ready = False


@app.before_request
def ensure_database():
    global _database_ready
    if not _database_ready:
        database.init_database()
        _database_ready = True


def current_user_id():
    """Single-owner deployment: every request acts for the default user."""
    return database.get_or_create_default_user()['id']


def _json_body():
    return request.get_json(silent=True) or {}


def _optional_float(value):
    if value is None or value == '':
        return None
    return float(value)


# ==============================================================================
# ERROR HANDLERS
# ==============================================================================

@app.errorhandler(trading.NotFoundError)
def handle_not_found(e):
    return jsonify({'error': str(e)}), 404


@app.errorhandler(trading.TradeLimitError)
def handle_trade_limit(e):
    return jsonify({'error': str(e), 'limit_reached': True}), 403


@app.errorhandler(ValueError)
def handle_value_error(e):
    return jsonify({'error': str(e)}), 400


@app.errorhandler(trading.PriceUnavailableError)
def handle_price_unavailable(e):
    print(f"ERROR: {e}")
    return jsonify({'error': str(e)}), 502


# ==============================================================================
# END ERROR HANDLERS
# ==============================================================================


@app.route('/')
def index():
    return jsonify({
        'name': 'Wheel Tracker API',
        'version': API_VERSION,
        'endpoints': sorted({rule.rule for rule in app.url_map.iter_rules() if rule.endpoint != 'static'}),
    })


@app.route('/api/health')
def health():
    return jsonify({'status': 'healthy', 'timestamp': datetime.now().isoformat(timespec='seconds')})


# ==============================================================================
# TRADES
# ==============================================================================

@app.route('/api/trades', methods=['GET'])
def list_trades():
    trade_type = request.args.get('type')
    if trade_type and trade_type.upper() not in trading.TRADE_TYPES:
        return jsonify({'error': 'Type must be PUT or CALL'}), 400

    trades = database.list_trades(
        current_user_id(),
        status=request.args.get('status'),
        ticker=request.args.get('ticker'),
        start_date=request.args.get('start_date'),
        end_date=request.args.get('end_date'),
        trade_type=trade_type.upper() if trade_type else None,
    )
    return jsonify(trades)


@app.route('/api/trades', methods=['POST'])
def create_trade():
    data = request.json
    if not data:
        return jsonify({'error': 'Missing required fields'}), 400

    required = ['ticker', 'type', 'strike_price', 'premium', 'contracts', 'expiration_date']
    missing = [field for field in required if data.get(field) in (None, '')]
    if missing:
        return jsonify({'error': f'Missing required fields: {", ".join(missing)}'}), 400

    trade = trading.create_trade(current_user_id(), data)
    return jsonify(trade), 201


@app.route('/api/trades/<int:trade_id>/expire', methods=['POST'])
def expire_trade(trade_id):
    return jsonify(trading.mark_expired(trade_id))


@app.route('/api/trades/<int:trade_id>/assign', methods=['POST'])
def assign_trade(trade_id):
    return jsonify(trading.mark_assigned(trade_id))


@app.route('/api/trades/<int:trade_id>/close', methods=['POST'])
def close_trade(trade_id):
    data = _json_body()
    if data.get('close_premium') in (None, ''):
        return jsonify({'error': 'close_premium is required'}), 400
    return jsonify(trading.close_trade(trade_id, data['close_premium']))


@app.route('/api/trades/<int:trade_id>/roll', methods=['POST'])
def roll_trade(trade_id):
    data = _json_body()
    required = ['new_strike', 'new_expiration', 'close_premium', 'open_premium']
    missing = [field for field in required if data.get(field) in (None, '')]
    if missing:
        return jsonify({'error': f'Missing required fields: {", ".join(missing)}'}), 400

    result = trading.roll_option(
        trade_id,
        data['new_strike'],
        data['new_expiration'],
        data['close_premium'],
        data['open_premium'],
        notes=data.get('notes'),
    )
    return jsonify(result)


@app.route('/api/trades/batch-expire', methods=['POST'])
def batch_expire_trades():
    trade_ids = _json_body().get('trade_ids')
    if not isinstance(trade_ids, list) or not trade_ids:
        return jsonify({'error': 'trade_ids must be a non-empty list'}), 400
    return jsonify(trading.batch_mark_expired(trade_ids))


@app.route('/api/trades/usage')
def trade_usage():
    return jsonify(trading.get_trade_usage(current_user_id()))


# ==============================================================================
# END TRADES
# ==============================================================================


# ==============================================================================
# POSITIONS
# ==============================================================================

@app.route('/api/positions')
def list_positions():
    positions = database.list_positions_with_premiums(current_user_id(), status=request.args.get('status'))
    prices = database.get_cached_prices({p['ticker'] for p in positions})

    for position in positions:
        if position['status'] == 'OPEN':
            price = prices.get(position['ticker'])
            position['current_price'] = price
            position['unrealized_pl'] = calculate_position_unrealized(position, price)
    return jsonify(positions)


@app.route('/api/positions/<int:position_id>')
def get_position(position_id):
    position = database.get_position(position_id)
    if not position:
        return jsonify({'error': 'Position not found'}), 404

    position['trades'] = database.list_trades_for_position(position_id)
    position['days_held'] = calculate_position_days_held(position['acquired_date'], position['closed_date'])
    return jsonify(position)


@app.route('/api/positions/<int:position_id>/covered-call', methods=['POST'])
def sell_covered_call(position_id):
    data = _json_body()
    required = ['strike_price', 'premium', 'contracts', 'expiration_date']
    missing = [field for field in required if data.get(field) in (None, '')]
    if missing:
        return jsonify({'error': f'Missing required fields: {", ".join(missing)}'}), 400
    return jsonify(trading.sell_covered_call(position_id, data)), 201


# ==============================================================================
# END POSITIONS
# ==============================================================================


# ==============================================================================
# WHEELS
# ==============================================================================

@app.route('/api/wheels', methods=['GET'])
def list_wheels():
    wheels = database.list_wheels(
        current_user_id(),
        status=request.args.get('status'),
        ticker=request.args.get('ticker'),
    )
    return jsonify(wheels)


@app.route('/api/wheels', methods=['POST'])
def create_wheel():
    data = _json_body()
    if not data.get('ticker'):
        return jsonify({'error': 'Ticker is required'}), 400
    return jsonify(trading.create_wheel(current_user_id(), data['ticker'], data.get('notes'))), 201


@app.route('/api/wheels/<int:wheel_id>')
def get_wheel(wheel_id):
    return jsonify(trading.get_wheel_detail(wheel_id))


@app.route('/api/wheels/<int:wheel_id>/pause', methods=['POST'])
def pause_wheel(wheel_id):
    return jsonify(trading.pause_wheel(wheel_id))


@app.route('/api/wheels/<int:wheel_id>/complete', methods=['POST'])
def complete_wheel(wheel_id):
    return jsonify(trading.complete_wheel(wheel_id))


# ==============================================================================
# END WHEELS
# ==============================================================================


# ==============================================================================
# DASHBOARD AND P&L
# ==============================================================================

@app.route('/api/dashboard')
def dashboard():
    user_id = current_user_id()
    threshold = get_time_range_threshold(request.args.get('range', 'All'))

    positions = database.list_positions_with_premiums(user_id)
    prices = database.get_cached_prices()

    metrics = calculate_dashboard_metrics(
        positions,
        database.list_trades(user_id),
        database.list_deposits(user_id),
        prices,
        spy_price=prices.get('SPY'),
        threshold=threshold,
    )
    return jsonify(metrics)


@app.route('/api/dashboard/pl-over-time')
def pl_over_time():
    threshold = get_time_range_threshold(request.args.get('range', 'All'))
    positions = positions_since(database.list_positions_with_premiums(current_user_id()), threshold)
    return jsonify(calculate_pl_over_time(positions, database.get_cached_prices()))


@app.route('/api/dashboard/pl-by-ticker')
def pl_by_ticker():
    threshold = get_time_range_threshold(request.args.get('range', 'All'))
    positions = positions_since(database.list_positions_with_premiums(current_user_id()), threshold)
    return jsonify(calculate_pl_by_ticker(positions, database.get_cached_prices()))


@app.route('/api/dashboard/win-rate')
def win_rate():
    threshold = get_time_range_threshold(request.args.get('range', 'All'))
    closed = database.list_positions(current_user_id(), status='CLOSED')
    return jsonify(calculate_win_rate_data(positions_since(closed, threshold, field='closed_date')))


@app.route('/api/pnl')
def pnl():
    timeframe = request.args.get('timeframe', 'all')
    if timeframe not in TIMEFRAMES:
        return jsonify({'error': f'Invalid timeframe. Must be one of: {", ".join(TIMEFRAMES)}'}), 400

    today = date.today()
    positions = database.list_positions(current_user_id())
    prices = database.get_cached_prices({p['ticker'] for p in positions})

    result = calculate_pnl_by_timeframe(positions, prices, timeframe, today)

    start = get_timeframe_start(timeframe, today)
    realized = calculate_realized_pnl_by_ticker(
        [p for p in positions if p['status'] == 'CLOSED'],
        start_date=start,
        end_date=today if start else None,
    )
    unrealized = {}
    if timeframe == 'all':
        unrealized = calculate_unrealized_pnl_by_ticker([p for p in positions if p['status'] == 'OPEN'], prices)
    result['by_ticker'] = merge_pnl_by_ticker(realized, unrealized)
    return jsonify(result)


@app.route('/api/pnl/stats')
def pnl_stats():
    user_id = current_user_id()
    positions = database.list_positions(user_id)
    prices = database.get_cached_prices({p['ticker'] for p in positions})
    return jsonify(calculate_portfolio_stats(positions, database.list_trades(user_id), prices))


@app.route('/api/portfolio/metrics')
def portfolio_metrics():
    user_id = current_user_id()
    wheels = database.list_wheels(user_id)

    metrics = calculate_portfolio_metrics(wheels, database.list_positions(user_id, status='OPEN'))
    best, worst = get_best_and_worst_performers(calculate_ticker_performances(wheels), BENCHMARK_TOP_PERFORMERS)
    metrics['best_performers'] = best
    metrics['worst_performers'] = worst
    return jsonify(metrics)


# ==============================================================================
# END DASHBOARD AND P&L
# ==============================================================================


# ==============================================================================
# DEPOSITS
# ==============================================================================

@app.route('/api/deposits', methods=['GET'])
def list_deposits():
    user_id = current_user_id()
    deposit_type = request.args.get('type')
    if deposit_type and deposit_type not in (DEPOSIT, WITHDRAWAL):
        return jsonify({'error': 'Type must be DEPOSIT or WITHDRAWAL'}), 400

    deposits = database.list_deposits(
        user_id,
        deposit_type=deposit_type,
        start_date=request.args.get('start_date'),
        end_date=request.args.get('end_date'),
        newest_first=True,
    )
    return jsonify(deposits)


@app.route('/api/deposits', methods=['POST'])
def create_deposit():
    data = _json_body()
    if data.get('amount') in (None, ''):
        return jsonify({'error': 'Amount is required'}), 400

    deposit = trading.record_deposit(current_user_id(), data['amount'], data.get('deposit_date'), data.get('notes'))
    return jsonify(deposit), 201


@app.route('/api/deposits/withdraw', methods=['POST'])
def create_withdrawal():
    data = _json_body()
    if data.get('amount') in (None, ''):
        return jsonify({'error': 'Amount is required'}), 400

    withdrawal = trading.record_withdrawal(current_user_id(), data['amount'], data.get('withdrawal_date'), data.get('notes'))
    return jsonify(withdrawal), 201


@app.route('/api/deposits/<int:deposit_id>', methods=['DELETE'])
def delete_deposit(deposit_id):
    deleted = trading.delete_deposit(current_user_id(), deposit_id)
    return jsonify({'success': True, 'deleted': deleted})


@app.route('/api/deposits/summary')
def deposit_summary():
    return jsonify(calculate_deposit_summary(database.list_deposits(current_user_id())))


@app.route('/api/deposits/preview', methods=['POST'])
def deposit_preview():
    data = _json_body()
    try:
        amount = _optional_float(data.get('amount'))
    except (TypeError, ValueError):
        return jsonify({'error': 'Amount must be a number'}), 400
    if amount is None or amount <= 0:
        return jsonify({'error': 'Amount must be positive'}), 400

    preview_type = data.get('type', DEPOSIT)
    if preview_type not in (DEPOSIT, WITHDRAWAL):
        return jsonify({'error': 'Type must be DEPOSIT or WITHDRAWAL'}), 400

    spy_price = market_data.get_spy_price_for_date(data.get('date') or date.today())
    if spy_price is None:
        return jsonify({'error': 'Failed to fetch SPY price'}), 502

    deposits = database.list_deposits(current_user_id())
    if preview_type == WITHDRAWAL:
        return jsonify(preview_withdrawal(amount, spy_price, deposits))
    return jsonify(preview_deposit(amount, spy_price, deposits))


@app.route('/api/deposits/lump-sum')
def lump_sum_comparison():
    deposits = database.list_deposits(current_user_id())
    if not deposits:
        return jsonify({'error': 'No deposits to compare'}), 400

    lump_sum_date = request.args.get('date')
    compare_date = lump_sum_date or min(d['deposit_date'] for d in deposits)

    lump_sum_price = market_data.get_spy_price_for_date(compare_date)
    current = market_data.get_latest_price('SPY')
    if lump_sum_price is None or not current['success']:
        return jsonify({'error': 'Failed to fetch SPY prices'}), 502

    if lump_sum_date:
        return jsonify(calculate_what_if(deposits, compare_date, lump_sum_price, current['price']))
    return jsonify(calculate_lump_sum_comparison(deposits, compare_date, lump_sum_price, current['price']))


# ==============================================================================
# END DEPOSITS
# ==============================================================================


# ==============================================================================
# BENCHMARKS
# ==============================================================================

@app.route('/api/benchmarks', methods=['GET'])
def benchmark_comparison():
    return jsonify(trading.get_benchmark_comparison(current_user_id()))


@app.route('/api/benchmarks', methods=['POST'])
def create_benchmark():
    data = _json_body()
    if not data.get('ticker') or data.get('initial_capital') in (None, ''):
        return jsonify({'error': 'Missing required fields: ticker, initial_capital'}), 400

    bench = trading.setup_benchmark(current_user_id(), data['ticker'], data['initial_capital'], data.get('setup_date'))
    return jsonify(bench), 201


@app.route('/api/benchmarks/history')
def benchmark_history():
    deposits = database.list_deposits(current_user_id())
    compare_ticker = request.args.get('compare')
    if compare_ticker:
        compare_ticker = trading.normalize_ticker(compare_ticker)

    if not deposits:
        history = build_benchmark_history([], None)
        return jsonify({'history': history, 'analytics': summarize_benchmark_history(history)})

    today = date.today()
    start = min(d['deposit_date'] for d in deposits)
    end = (today + timedelta(days=1)).strftime('%Y-%m-%d')

    spy_history = market_data.fetch_stock_data('SPY', start, end)
    if spy_history is None:
        return jsonify({'error': 'No SPY data found for the deposit period'}), 502

    history = build_benchmark_history(deposits, spy_history, today)

    comparison_closes = None
    if compare_ticker:
        compare_history = market_data.fetch_stock_data(compare_ticker, start, end)
        if compare_history is None:
            return jsonify({'error': f'No data found for {compare_ticker}'}), 502
        aligned = market_data.align_to_target_dates(compare_history, history['dates'])
        if aligned is None:
            return jsonify({'error': f'No common dates between SPY and {compare_ticker}'}), 404
        comparison_closes = aligned['Close'].tolist()

    result = {'history': history, 'analytics': summarize_benchmark_history(history, comparison_closes)}
    if compare_ticker:
        result['compare_ticker'] = compare_ticker
        result['compare_closes'] = comparison_closes
    return jsonify(result)


# ==============================================================================
# END BENCHMARKS
# ==============================================================================


# ==============================================================================
# EXPIRATIONS AND MARKET DATA
# ==============================================================================

@app.route('/api/expirations')
def upcoming_expirations():
    try:
        days = int(request.args.get('days', trading.DEFAULT_EXPIRATION_WINDOW))
    except ValueError:
        return jsonify({'error': 'days must be a whole number'}), 400
    if days < 0 or days > MAX_EXPIRATION_WINDOW:
        return jsonify({'error': f'days must be between 0 and {MAX_EXPIRATION_WINDOW}'}), 400

    return jsonify(trading.get_upcoming_expirations(current_user_id(), days))


@app.route('/api/notifications/itm')
def itm_options():
    return jsonify(trading.get_itm_options(current_user_id()))


@app.route('/api/notifications/uncovered-positions')
def positions_without_calls():
    return jsonify(trading.get_positions_without_calls(current_user_id()))


@app.route('/api/stocks/<ticker>/price')
def stock_price(ticker):
    ticker = trading.normalize_ticker(ticker)
    cached = database.get_cached_price(ticker)
    if not cached:
        return jsonify({'error': f'No price data available for {ticker}. Refresh market data first.'}), 404

    cached['is_stale'] = market_data.is_price_stale(cached['updated_at'])
    return jsonify(cached)


@app.route('/api/market-data/refresh', methods=['POST'])
def refresh_market_data():
    tickers = _json_body().get('tickers')
    if tickers is None:
        tickers = trading.get_active_tickers(current_user_id())
    elif not isinstance(tickers, list):
        return jsonify({'error': 'tickers must be a list'}), 400
    else:
        tickers = [trading.normalize_ticker(t) for t in tickers]

    return jsonify(market_data.batch_fetch_prices(tickers))


# ==============================================================================
# END EXPIRATIONS AND MARKET DATA
# ==============================================================================


# ==============================================================================
# OPTIONS TOOLS
# ==============================================================================

@app.route('/api/options/moneyness', methods=['POST'])
def option_moneyness():
    data = _json_body()
    try:
        current_price = float(data.get('current_price'))
        strike_price = float(data.get('strike_price'))
    except (TypeError, ValueError):
        return jsonify({'error': 'current_price and strike_price must be numbers'}), 400

    option_type = str(data.get('option_type', '')).upper()
    return jsonify(calculate_moneyness(option_type, current_price, strike_price))


@app.route('/api/options/implied-volatility', methods=['POST'])
def implied_volatility():
    data = _json_body()
    try:
        option_price = float(data.get('option_price'))
        stock_price = float(data.get('stock_price'))
        strike_price = float(data.get('strike_price'))
        dte = float(data.get('dte'))
    except (TypeError, ValueError):
        return jsonify({'error': 'option_price, stock_price, strike_price and dte must be numbers'}), 400

    iv = compute_iv(option_price, stock_price, strike_price, dte_to_years(dte))
    if iv is None:
        return jsonify({'error': 'Could not compute implied volatility for these inputs'}), 400

    return jsonify({'implied_volatility': iv, 'iv_percent': round(iv * 100, 2)})


@app.route('/api/options/suggest-call-strike', methods=['POST'])
def suggest_strike():
    data = _json_body()

    if data.get('position_id'):
        position = database.get_position(data['position_id'])
        if not position:
            return jsonify({'error': 'Position not found'}), 404
        cost_basis = position['cost_basis']
    else:
        try:
            cost_basis = float(data.get('cost_basis'))
        except (TypeError, ValueError):
            return jsonify({'error': 'cost_basis or position_id is required'}), 400

    try:
        desired_return_pct = float(data.get('desired_return_pct', 0))
    except (TypeError, ValueError):
        return jsonify({'error': 'desired_return_pct must be a number'}), 400

    return jsonify({
        'cost_basis': cost_basis,
        'desired_return_pct': desired_return_pct,
        'suggested_strike': round(suggest_call_strike(cost_basis, desired_return_pct), 2),
    })


# ==============================================================================
# END OPTIONS TOOLS
# ==============================================================================


# ==============================================================================
# SCANNER
# ==============================================================================

@app.route('/api/watchlist', methods=['GET'])
def get_watchlist():
    return jsonify(trading.get_watchlist(current_user_id()))


@app.route('/api/watchlist', methods=['POST'])
def add_watchlist_ticker():
    ticker = _json_body().get('ticker')
    if not ticker:
        return jsonify({'error': 'Ticker is required'}), 400
    return jsonify({'ticker': trading.add_to_watchlist(current_user_id(), ticker)}), 201


@app.route('/api/watchlist', methods=['DELETE'])
def remove_watchlist_ticker():
    ticker = request.args.get('ticker') or _json_body().get('ticker')
    if not ticker:
        return jsonify({'error': 'Ticker is required'}), 400
    return jsonify({'ticker': trading.remove_from_watchlist(current_user_id(), ticker), 'removed': True})


@app.route('/api/scanner/run', methods=['POST'])
def run_scanner():
    if not os.environ.get('FINANCIAL_DATA_API_KEY'):
        return jsonify({'error': 'FINANCIAL_DATA_API_KEY is not configured'}), 500

    user_id = current_user_id()
    if not trading.get_watchlist(user_id):
        return jsonify({'error': 'Watchlist is empty. Add tickers before scanning.'}), 400

    return jsonify(run_full_scan(user_id))


@app.route('/api/scanner/results')
def scanner_results():
    return jsonify(database.list_scan_results(current_user_id()))


# ==============================================================================
# END SCANNER
# ==============================================================================


# ==============================================================================
# EXPORTS
# ==============================================================================

def _csv_response(csv_text, prefix):
    return Response(
        csv_text,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{generate_export_filename(prefix)}"'},
    )


@app.route('/api/export/pl')
def export_pl():
    user_id = current_user_id()
    start_date = request.args.get('start_date')
    end_date = request.args.get('end_date')

    trades = database.list_trades(user_id, start_date=start_date, end_date=end_date)
    csv_text = build_pl_report_csv(trades, database.list_positions(user_id), start_date, end_date)
    return _csv_response(csv_text, 'pl-report')


@app.route('/api/export/deposits')
def export_deposits():
    deposits = database.list_deposits(current_user_id(), newest_first=True)
    return _csv_response(build_deposits_csv(deposits), 'deposits-export')


# ==============================================================================
# END EXPORTS
# ==============================================================================


# ==============================================================================
# CRON AND WEBHOOKS
# ==============================================================================

def _check_cron_auth():
    """Returns an error response unless the request carries the cron bearer token."""
    secret = os.environ.get('CRON_SECRET')
    if not secret:
        print("[CRON] CRON_SECRET not configured")
        return jsonify({'error': 'Cron secret not configured'}), 500
    if request.headers.get('Authorization') != f'Bearer {secret}':
        return jsonify({'error': 'Unauthorized'}), 401
    return None


@app.route('/api/cron/update-prices', methods=['POST'])
def cron_update_prices():
    denied = _check_cron_auth()
    if denied:
        return denied

    if not market_data.is_market_open():
        next_open = market_data.get_next_market_open()
        print(f"[CRON] Market is closed, skipping price updates (next open {next_open.isoformat()})")
        return jsonify({
            'success': True,
            'skipped': True,
            'reason': 'Market is closed',
            'next_market_open': next_open.isoformat(),
        })

    tickers = trading.get_active_tickers(current_user_id())
    print(f"[CRON] Updating prices for {len(tickers)} tickers")
    result = market_data.batch_fetch_prices(tickers)

    summary = result['summary']
    print(f"[CRON] Price update complete: {summary['successful']} succeeded, {summary['failed']} failed")
    result['success'] = True
    result['skipped'] = False
    return jsonify(result)


@app.route('/api/cron/webhook-health', methods=['POST'])
def cron_webhook_health():
    denied = _check_cron_auth()
    if denied:
        return denied
    return jsonify(webhooks.get_webhook_health())


@app.route('/api/webhooks/stripe', methods=['POST'])
def stripe_webhook():
    body, status = webhooks.handle_webhook(request.get_data(), request.headers.get('Stripe-Signature'))
    return jsonify(body), status


# ==============================================================================
# END CRON AND WEBHOOKS
# ==============================================================================


@app.route('/search')
def search_ticker():
    query = request.args.get('q', '')
    if not query:
        return jsonify([])

    try:
        url = "https://query2.finance.yahoo.com/v1/finance/search"
        headers = {'User-Agent': 'Mozilla/5.0'}
        response = requests.get(url, params={'q': query}, headers=headers, timeout=10)
        data = response.json()

        suggestions = []
        for quote in data.get('quotes', []):
            suggestions.append({
                'symbol': quote.get('symbol'),
                'name': quote.get('shortname', quote.get('longname', '')),
                'type': quote.get('quoteType'),
                'exch': quote.get('exchange')
            })
        return jsonify(suggestions)
    except (requests.RequestException, ValueError) as e:
        print(f"Search error: {e}")
        return jsonify([])


if __name__ == '__main__':
    # Production-ready configuration with environment variables
    database.init_database()
    port = int(os.environ.get('PORT', 8080))
    debug = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    app.run(debug=debug, host='0.0.0.0', port=port)
