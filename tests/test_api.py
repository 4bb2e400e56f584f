"""
Flask API tests: request validation, error mapping and the main workflows.

Runs against a temporary database; prices, Yahoo search and the scanner are mocked.
"""

import json
import os
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock, patch

import requests

import database
from app import app
from black_scholes import bs_put_price
from market_data import MARKET_TZ
from tests.conftest import DatabaseTestCase, create_price_history


def put_payload(**overrides):
    payload = {
        'ticker': 'AAPL',
        'type': 'PUT',
        'strike_price': 50,
        'premium': 200,
        'contracts': 1,
        'open_date': '2024-01-02',
        'expiration_date': '2024-02-16',
    }
    payload.update(overrides)
    return payload


class ApiTestCase(DatabaseTestCase):
    """Test client over a fresh database"""

    def setUp(self):
        super().setUp()
        self.app = app.test_client()
        self.app.testing = True

    def post_json(self, url, payload=None, **kwargs):
        """POST a JSON body, {} when none is given"""
        return self.app.post(url, json=payload if payload is not None else {}, **kwargs)


class TestServiceEndpoints(ApiTestCase):
    """Index and health"""

    def test_index_lists_endpoints(self):
        """The index names the API and its endpoints"""
        data = json.loads(self.app.get('/').data)
        self.assertEqual(data['name'], 'Wheel Tracker API')
        self.assertIn('/api/trades', data['endpoints'])
        self.assertIn('/api/webhooks/stripe', data['endpoints'])

    def test_health(self):
        """Health check answers 200"""
        response = self.app.get('/api/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.data)['status'], 'healthy')


class TestTradeEndpoints(ApiTestCase):
    """Trade routes"""

    def test_empty_body(self):
        """An empty body is rejected"""
        response = self.post_json('/api/trades')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data)['error'], 'Missing required fields')

    def test_missing_fields(self):
        """Missing fields are listed"""
        response = self.post_json('/api/trades', {'ticker': 'AAPL', 'type': 'PUT', 'strike_price': 50,
                                                  'expiration_date': '2024-02-16'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data)['error'], 'Missing required fields: premium, contracts')

    def test_validation_error_is_400(self):
        """Validation errors map to 400"""
        response = self.post_json('/api/trades', put_payload(type='STRADDLE'))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data)['error'], 'Type must be PUT or CALL')

    def test_create_and_filter(self):
        """Trades are created and filtered by type and ticker"""
        response = self.post_json('/api/trades', put_payload())
        self.assertEqual(response.status_code, 201)
        self.assertEqual(json.loads(response.data)['status'], 'OPEN')

        self.post_json('/api/trades', put_payload(ticker='KO', type='CALL'))
        trades = json.loads(self.app.get('/api/trades?type=call').data)
        self.assertEqual([t['ticker'] for t in trades], ['KO'])
        self.assertEqual(len(json.loads(self.app.get('/api/trades?ticker=aapl').data)), 1)

    def test_invalid_type_filter(self):
        """An unknown type filter is a 400"""
        self.assertEqual(self.app.get('/api/trades?type=straddle').status_code, 400)

    def test_trade_limit_is_403(self):
        """The FREE limit maps to 403 with limit_reached"""
        with patch('trading.FREE_TRADE_LIMIT', 0):
            response = self.post_json('/api/trades', put_payload())
        self.assertEqual(response.status_code, 403)
        self.assertTrue(json.loads(response.data)['limit_reached'])

    def test_usage(self):
        """Usage reflects recorded trades"""
        self.post_json('/api/trades', put_payload())
        usage = json.loads(self.app.get('/api/trades/usage').data)
        self.assertEqual(usage['trades_used'], 1)
        self.assertEqual(usage['tier'], 'FREE')

    def test_missing_trade_is_404(self):
        """Unknown trades map to 404"""
        response = self.post_json('/api/trades/999/expire')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(json.loads(response.data)['error'], 'Trade not found')

    def test_expire_and_close(self):
        """Expire and close, with close_premium required"""
        first = json.loads(self.post_json('/api/trades', put_payload()).data)
        second = json.loads(self.post_json('/api/trades', put_payload(ticker='KO')).data)

        self.assertEqual(json.loads(self.post_json(f"/api/trades/{first['id']}/expire").data)['status'], 'EXPIRED')

        response = self.post_json(f"/api/trades/{second['id']}/close")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data)['error'], 'close_premium is required')

        closed = json.loads(self.post_json(f"/api/trades/{second['id']}/close", {'close_premium': 40}).data)
        self.assertEqual(closed['status'], 'CLOSED')

    def test_roll_requires_fields(self):
        """Roll fields are all required"""
        trade = json.loads(self.post_json('/api/trades', put_payload()).data)
        response = self.post_json(f"/api/trades/{trade['id']}/roll", {'new_strike': 48})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data)['error'],
                         'Missing required fields: new_expiration, close_premium, open_premium')

    def test_roll(self):
        """A roll returns both legs and the net premium"""
        trade = json.loads(self.post_json('/api/trades', put_payload()).data)
        response = self.post_json(f"/api/trades/{trade['id']}/roll", {
            'new_strike': 48, 'new_expiration': '2099-01-16', 'close_premium': 50, 'open_premium': 120,
        })
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['net_premium'], 70)
        self.assertEqual(data['new_trade']['rolled_from_id'], trade['id'])

    def test_batch_expire(self):
        """Batch expire needs ids and reports failures"""
        trade = json.loads(self.post_json('/api/trades', put_payload()).data)
        self.assertEqual(self.post_json('/api/trades/batch-expire', {'trade_ids': []}).status_code, 400)

        data = json.loads(self.post_json('/api/trades/batch-expire', {'trade_ids': [trade['id'], 999]}).data)
        self.assertEqual(data['expired'], [trade['id']])
        self.assertEqual(data['failed'][0]['id'], 999)

    def test_expirations_window(self):
        """The expiration window is validated"""
        self.assertEqual(self.app.get('/api/expirations?days=abc').status_code, 400)
        self.assertEqual(self.app.get('/api/expirations?days=400').status_code, 400)
        self.assertEqual(self.app.get('/api/expirations?days=30').status_code, 200)

    @patch('market_data.get_latest_price', return_value={'success': True, 'price': 45.0, 'error': None})
    def test_itm_notifications(self, mock_latest):
        """Open options below or above their strike are listed with intrinsic value"""
        self.post_json('/api/trades', put_payload())
        self.post_json('/api/trades', put_payload(strike_price=40))

        itm = json.loads(self.app.get('/api/notifications/itm').data)
        self.assertEqual([t['strike_price'] for t in itm], [50])
        self.assertEqual(itm[0]['intrinsic_value'], 500)
        self.assertEqual(itm[0]['current_price'], 45.0)


class TestPositionWorkflow(ApiTestCase):
    """Assignment, covered calls and position detail"""

    def setUp(self):
        super().setUp()
        put = json.loads(self.post_json('/api/trades', put_payload()).data)
        self.position = json.loads(self.post_json(f"/api/trades/{put['id']}/assign").data)['position']

    def test_assignment_creates_position(self):
        """PUT assignment returns the new position"""
        self.assertEqual(self.position['total_cost'], 4800)
        self.assertEqual(self.position['status'], 'OPEN')

    def test_covered_call_and_marking(self):
        """Covered call writing and marking to the cached price"""
        response = self.post_json(f"/api/positions/{self.position['id']}/covered-call", {
            'strike_price': 55, 'premium': 150, 'contracts': 1,
            'open_date': '2024-02-20', 'expiration_date': '2024-03-15',
        })
        self.assertEqual(response.status_code, 201)

        database.save_price('AAPL', 52, '2024-02-21')
        positions = json.loads(self.app.get('/api/positions').data)
        self.assertEqual(positions[0]['current_price'], 52)
        # 5200 value - 4800 cost + 150 call premium
        self.assertEqual(positions[0]['unrealized_pl'], 550)

        detail = json.loads(self.app.get(f"/api/positions/{self.position['id']}").data)
        self.assertEqual([t['type'] for t in detail['trades']], ['CALL'])
        self.assertIn('days_held', detail)

    def test_covered_call_requires_fields(self):
        """Covered call fields are required"""
        response = self.post_json(f"/api/positions/{self.position['id']}/covered-call", {'strike_price': 55})
        self.assertEqual(response.status_code, 400)

    def test_missing_position(self):
        """Unknown positions map to 404"""
        self.assertEqual(self.app.get('/api/positions/999').status_code, 404)

    def test_suggest_strike_from_position(self):
        """Strike suggestion from a stored position"""
        data = json.loads(self.post_json('/api/options/suggest-call-strike', {
            'position_id': self.position['id'], 'desired_return_pct': 10,
        }).data)
        self.assertEqual(data['cost_basis'], 48)
        self.assertEqual(data['suggested_strike'], 52.8)

    def test_second_covered_call_is_400(self):
        """Only one covered CALL may be open on a position"""
        call = {'strike_price': 55, 'premium': 150, 'contracts': 1,
                'open_date': '2024-02-20', 'expiration_date': '2024-03-15'}
        url = f"/api/positions/{self.position['id']}/covered-call"
        self.assertEqual(self.post_json(url, call).status_code, 201)

        response = self.post_json(url, dict(call, strike_price=60))
        self.assertEqual(response.status_code, 400)
        self.assertIn('already has an open covered CALL', json.loads(response.data)['error'])

    def test_uncovered_positions(self):
        """The position shows up until a covered CALL is written"""
        uncovered = json.loads(self.app.get('/api/notifications/uncovered-positions').data)
        self.assertEqual([p['id'] for p in uncovered], [self.position['id']])
        self.assertIsNone(uncovered[0]['current_value'])

        self.post_json(f"/api/positions/{self.position['id']}/covered-call", {
            'strike_price': 55, 'premium': 150, 'contracts': 1,
            'open_date': '2024-02-20', 'expiration_date': '2024-03-15',
        })
        self.assertEqual(json.loads(self.app.get('/api/notifications/uncovered-positions').data), [])


class TestWheelEndpoints(ApiTestCase):
    """Wheel routes"""

    def test_lifecycle(self):
        """Create, duplicate, detail, pause and complete"""
        self.assertEqual(self.post_json('/api/wheels').status_code, 400)

        response = self.post_json('/api/wheels', {'ticker': 'aapl'})
        self.assertEqual(response.status_code, 201)
        wheel = json.loads(response.data)
        self.assertEqual(wheel['ticker'], 'AAPL')

        self.assertEqual(self.post_json('/api/wheels', {'ticker': 'AAPL'}).status_code, 400)

        detail = json.loads(self.app.get(f"/api/wheels/{wheel['id']}").data)
        self.assertEqual(detail['trades'], [])
        self.assertEqual(detail['win_rate'], 0)

        self.assertEqual(json.loads(self.post_json(f"/api/wheels/{wheel['id']}/pause").data)['status'], 'PAUSED')
        self.assertEqual(json.loads(self.post_json(f"/api/wheels/{wheel['id']}/complete").data)['status'], 'COMPLETED')
        self.assertEqual(len(json.loads(self.app.get('/api/wheels?status=COMPLETED').data)), 1)

    def test_missing_wheel(self):
        """Unknown wheels map to 404"""
        self.assertEqual(self.app.get('/api/wheels/42').status_code, 404)


class TestDashboardEndpoints(ApiTestCase):
    """Dashboard and P&L routes"""

    def test_dashboard_ranges(self):
        """Dashboard accepts known ranges only"""
        self.add_deposit(10000)
        database.save_price('SPY', 420, '2024-03-01')

        data = json.loads(self.app.get('/api/dashboard?range=3M').data)
        self.assertEqual(data['cash_deposits'], 10000)
        self.assertEqual(data['spy_comparison_value'], 25 * 420)

        self.assertEqual(self.app.get('/api/dashboard?range=2W').status_code, 400)

    def test_pnl_timeframes(self):
        """Timeframes are validated"""
        self.assertEqual(self.app.get('/api/pnl?timeframe=hourly').status_code, 400)
        data = json.loads(self.app.get('/api/pnl').data)
        self.assertEqual(data['total_pnl'], 0)
        self.assertEqual(data['by_ticker'], [])

    def test_read_models(self):
        """Every read model answers 200"""
        for url in ('/api/dashboard/pl-over-time', '/api/dashboard/pl-by-ticker', '/api/dashboard/win-rate',
                    '/api/pnl/stats', '/api/portfolio/metrics'):
            with self.subTest(url=url):
                self.assertEqual(self.app.get(url).status_code, 200)

    def add_closed_position(self, ticker, acquired, closed, realized):
        """Store a closed position with its dates and realized P&L"""
        return database.insert_position({
            'user_id': self.user_id, 'ticker': ticker, 'shares': 100, 'cost_basis': 48, 'total_cost': 4800,
            'acquired_date': acquired.strftime('%Y-%m-%d'), 'closed_date': closed.strftime('%Y-%m-%d'),
            'status': 'CLOSED', 'realized_gain_loss': realized,
        })

    def test_read_models_follow_range(self):
        """Charts only count positions inside the requested range"""
        today = date.today()
        self.add_closed_position('AAPL', today - timedelta(days=700), today - timedelta(days=600), 500)
        self.add_closed_position('KO', today - timedelta(days=10), today - timedelta(days=5), -100)

        win_rate = json.loads(self.app.get('/api/dashboard/win-rate?range=1M').data)
        self.assertEqual((win_rate['total'], win_rate['losers'], win_rate['winners']), (1, 1, 0))
        self.assertEqual(json.loads(self.app.get('/api/dashboard/win-rate').data)['total'], 2)

        by_ticker = json.loads(self.app.get('/api/dashboard/pl-by-ticker?range=1M').data)
        self.assertEqual([r['ticker'] for r in by_ticker], ['KO'])
        self.assertEqual(len(json.loads(self.app.get('/api/dashboard/pl-by-ticker?range=All').data)), 2)

        series = json.loads(self.app.get('/api/dashboard/pl-over-time?range=1M').data)
        self.assertEqual(series[0]['date'], (today - timedelta(days=10)).strftime('%Y-%m-%d'))
        self.assertEqual(series[-1]['realized_pl'], -100)

    def test_read_models_reject_unknown_range(self):
        """An unknown range is a 400 on every chart"""
        for url in ('/api/dashboard/pl-over-time', '/api/dashboard/pl-by-ticker', '/api/dashboard/win-rate'):
            with self.subTest(url=url):
                self.assertEqual(self.app.get(f'{url}?range=2W').status_code, 400)


@patch('market_data.get_spy_price_for_date', return_value=400.0)
class TestDepositEndpoints(ApiTestCase):
    """Deposit and withdrawal routes with a mocked SPY price"""

    def test_deposit_and_withdraw(self, mock_price):
        """Deposits and withdrawals list newest first"""
        response = self.post_json('/api/deposits', {'amount': 1000, 'deposit_date': '2024-01-02'})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(json.loads(response.data)['spy_shares'], 2.5)

        response = self.post_json('/api/deposits/withdraw', {'amount': 400, 'withdrawal_date': '2024-02-01'})
        self.assertEqual(response.status_code, 201)

        deposits = json.loads(self.app.get('/api/deposits').data)
        self.assertEqual([d['type'] for d in deposits], ['WITHDRAWAL', 'DEPOSIT'])
        summary = json.loads(self.app.get('/api/deposits/summary').data)
        self.assertEqual(summary['net_invested'], 600)

    def test_amount_required(self, mock_price):
        """Amount is required"""
        self.assertEqual(self.post_json('/api/deposits').status_code, 400)
        self.assertEqual(self.post_json('/api/deposits/withdraw').status_code, 400)

    def test_withdrawal_over_invested(self, mock_price):
        """Withdrawing without deposits is a 400"""
        response = self.post_json('/api/deposits/withdraw', {'amount': 400, 'withdrawal_date': '2024-02-01'})
        self.assertEqual(response.status_code, 400)

    def test_price_unavailable_is_502(self, mock_price):
        """No SPY price maps to 502"""
        mock_price.return_value = None
        response = self.post_json('/api/deposits', {'amount': 1000, 'deposit_date': '2024-01-02'})
        self.assertEqual(response.status_code, 502)

    def test_delete(self, mock_price):
        """Deleting twice is a 404"""
        deposit = json.loads(self.post_json('/api/deposits', {'amount': 1000, 'deposit_date': '2024-01-02'}).data)
        response = self.app.delete(f"/api/deposits/{deposit['id']}")
        self.assertTrue(json.loads(response.data)['success'])
        self.assertEqual(self.app.delete(f"/api/deposits/{deposit['id']}").status_code, 404)

    def test_invalid_type_filter(self, mock_price):
        """An unknown type filter is a 400"""
        self.assertEqual(self.app.get('/api/deposits?type=TRANSFER').status_code, 400)

    def test_preview(self, mock_price):
        """Preview adds to the current totals"""
        self.add_deposit(2000)
        data = json.loads(self.post_json('/api/deposits/preview', {'amount': 800, 'type': 'DEPOSIT'}).data)
        self.assertEqual(data['spy_shares'], 2.0)
        self.assertEqual(data['net_invested_after'], 2800)

    def test_preview_validation(self, mock_price):
        """Preview validates amount and type"""
        cases = [
            ({'amount': 'abc'}, 400, 'Amount must be a number'),
            ({'amount': -1}, 400, 'Amount must be positive'),
            ({'amount': 100, 'type': 'TRANSFER'}, 400, 'Type must be DEPOSIT or WITHDRAWAL'),
        ]
        for payload, status, message in cases:
            with self.subTest(payload=payload):
                response = self.post_json('/api/deposits/preview', payload)
                self.assertEqual(response.status_code, status)
                self.assertEqual(json.loads(response.data)['error'], message)

        mock_price.return_value = None
        self.assertEqual(self.post_json('/api/deposits/preview', {'amount': 100}).status_code, 502)

    @patch('market_data.get_latest_price', return_value={'success': True, 'price': 500.0})
    def test_lump_sum(self, mock_latest, mock_price):
        """Lump-sum comparison needs deposits"""
        self.assertEqual(self.app.get('/api/deposits/lump-sum').status_code, 400)

        self.add_deposit(1000, deposit_date='2024-01-02', spy_price=400.0)
        data = json.loads(self.app.get('/api/deposits/lump-sum').data)
        self.assertEqual(data['winner'], 'TIE')
        mock_price.assert_called_with('2024-01-02')


class TestBenchmarkEndpoints(ApiTestCase):
    """Benchmark routes"""

    def test_create_requires_fields(self):
        """Initial capital is required"""
        response = self.post_json('/api/benchmarks', {'ticker': 'QQQ'})
        self.assertEqual(response.status_code, 400)

    @patch('market_data.get_price_for_date', return_value=200.0)
    def test_create(self, mock_price):
        """A benchmark is created at the setup-date price"""
        response = self.post_json('/api/benchmarks', {'ticker': 'QQQ', 'initial_capital': 10000,
                                                      'setup_date': '2024-01-02'})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(json.loads(response.data)['shares'], 50)

    def test_history_without_deposits(self):
        """No deposits gives an empty history"""
        data = json.loads(self.app.get('/api/benchmarks/history').data)
        self.assertEqual(data['history']['dates'], [])

    @patch('market_data.fetch_stock_data')
    def test_history_with_comparison(self, mock_fetch):
        """History and analytics against a comparison ticker"""
        self.add_deposit(1000, deposit_date='2024-01-02', spy_price=400.0)
        frames = {
            'SPY': create_price_history([400.0, 404.0, 408.0], start_date='2024-01-02'),
            'QQQ': create_price_history([300.0, 303.0], start_date='2024-01-03'),
        }
        mock_fetch.side_effect = lambda ticker, start, end: frames.get(ticker)

        data = json.loads(self.app.get('/api/benchmarks/history?compare=qqq').data)

        self.assertEqual(data['history']['dates'], ['2024-01-02', '2024-01-03', '2024-01-04'])
        self.assertEqual(data['history']['values'], [1000, 1010, 1020])
        self.assertEqual(data['compare_ticker'], 'QQQ')
        self.assertEqual(data['compare_closes'], [300, 300, 303])
        self.assertIn('beta', data['analytics'])

    @patch('market_data.fetch_stock_data', return_value=None)
    def test_history_without_spy_data(self, mock_fetch):
        """No SPY history maps to 502"""
        self.add_deposit(1000)
        self.assertEqual(self.app.get('/api/benchmarks/history').status_code, 502)


class TestMarketDataEndpoints(ApiTestCase):
    """Price cache and refresh routes"""

    def test_cached_price(self):
        """Cached prices are served with their staleness"""
        self.assertEqual(self.app.get('/api/stocks/AAPL/price').status_code, 404)
        database.save_price('AAPL', 190.5, '2024-01-03')
        data = json.loads(self.app.get('/api/stocks/aapl/price').data)
        self.assertEqual(data['price'], 190.5)
        self.assertFalse(data['is_stale'])

    @patch('market_data.batch_fetch_prices')
    def test_refresh(self, mock_batch):
        """Refresh takes a list, defaulting to active tickers"""
        mock_batch.return_value = {'successful': [], 'failed': [], 'summary': {'total': 1, 'successful': 0, 'failed': 0}}

        self.assertEqual(self.post_json('/api/market-data/refresh', {'tickers': 'AAPL'}).status_code, 400)

        self.post_json('/api/market-data/refresh', {'tickers': ['aapl']})
        mock_batch.assert_called_with(['AAPL'])

        self.post_json('/api/market-data/refresh')
        mock_batch.assert_called_with(['SPY'])


class TestOptionsTools(ApiTestCase):
    """Stateless option calculators"""

    def test_moneyness(self):
        """Moneyness of a PUT below strike"""
        data = json.loads(self.post_json('/api/options/moneyness', {
            'option_type': 'put', 'current_price': 45, 'strike_price': 50,
        }).data)
        self.assertEqual(data['label'], 'ITM')
        self.assertEqual(data['intrinsic_value'], 5)

    def test_moneyness_validation(self):
        """Moneyness inputs are validated"""
        self.assertEqual(self.post_json('/api/options/moneyness', {'option_type': 'PUT'}).status_code, 400)
        response = self.post_json('/api/options/moneyness', {
            'option_type': 'STRADDLE', 'current_price': 45, 'strike_price': 50,
        })
        self.assertEqual(response.status_code, 400)

    def test_implied_volatility(self):
        """IV is solved from a model price"""
        price = bs_put_price(100, 95, 30 / 365, 0.05, 0.4)
        data = json.loads(self.post_json('/api/options/implied-volatility', {
            'option_price': price, 'stock_price': 100, 'strike_price': 95, 'dte': 30,
        }).data)
        self.assertAlmostEqual(data['iv_percent'], 40, places=1)

    def test_implied_volatility_validation(self):
        """IV inputs are required"""
        response = self.post_json('/api/options/implied-volatility', {'option_price': 1})
        self.assertEqual(response.status_code, 400)

    def test_implied_volatility_without_solution(self):
        """A price no volatility can produce is a 400"""
        response = self.post_json('/api/options/implied-volatility', {
            'option_price': 200, 'stock_price': 100, 'strike_price': 95, 'dte': 90,
        })
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data)['error'], 'Could not compute implied volatility for these inputs')

    def test_suggest_strike_from_cost_basis(self):
        """Suggestion from a bare cost basis"""
        data = json.loads(self.post_json('/api/options/suggest-call-strike', {'cost_basis': 40}).data)
        self.assertEqual(data['suggested_strike'], 40)
        self.assertEqual(self.post_json('/api/options/suggest-call-strike').status_code, 400)


class TestScannerEndpoints(ApiTestCase):
    """Watchlist and scanner routes"""

    def test_watchlist(self):
        """Watchlist add, duplicate, list and remove"""
        response = self.post_json('/api/watchlist', {'ticker': 'ko'})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(self.post_json('/api/watchlist', {'ticker': 'KO'}).status_code, 400)
        self.assertEqual(json.loads(self.app.get('/api/watchlist').data), ['KO'])

        self.assertEqual(json.loads(self.app.delete('/api/watchlist?ticker=KO').data)['removed'], True)
        self.assertEqual(self.app.delete('/api/watchlist?ticker=KO').status_code, 404)

    def test_scan_requires_api_key(self):
        """Scanning needs the data API key"""
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(self.post_json('/api/scanner/run').status_code, 500)

    @patch.dict(os.environ, {'FINANCIAL_DATA_API_KEY': 'test-key'})
    @patch('app.run_full_scan')
    def test_scan(self, mock_scan):
        """Scanning needs a watchlist"""
        response = self.post_json('/api/scanner/run')
        self.assertEqual(response.status_code, 400)
        mock_scan.assert_not_called()

        database.add_watchlist_ticker(self.user_id, 'KO')
        mock_scan.return_value = {'scan_date': '2024-06-03T10:00:00', 'results': [],
                                  'total_scanned': 1, 'total_passed': 0}
        response = self.post_json('/api/scanner/run')
        self.assertEqual(json.loads(response.data)['total_scanned'], 1)
        mock_scan.assert_called_once_with(self.user_id)

    def test_results(self):
        """Stored scan results are listed"""
        database.replace_scan_results(self.user_id, '2024-06-03T10:00:00', [{'ticker': 'KO', 'passed': False}])
        results = json.loads(self.app.get('/api/scanner/results').data)
        self.assertEqual(results[0]['ticker'], 'KO')


class TestExportEndpoints(ApiTestCase):
    """CSV download routes"""

    def test_pl_export(self):
        """P&L report downloads as CSV"""
        self.post_json('/api/trades', put_payload())
        response = self.app.get('/api/export/pl?start_date=2024-01-01')
        self.assertEqual(response.mimetype, 'text/csv')
        self.assertIn('attachment; filename="pl-report-', response.headers['Content-Disposition'])
        text = response.data.decode('utf-8')
        self.assertIn('AAPL,PUT,50.00,200.00', text)
        self.assertIn('Start Date,2024-01-01', text)

    def test_deposits_export(self):
        """Deposit history downloads as CSV"""
        self.add_deposit(1000)
        response = self.app.get('/api/export/deposits')
        self.assertIn('deposits-export-', response.headers['Content-Disposition'])
        self.assertIn('2024-01-02,DEPOSIT,1000.00', response.data.decode('utf-8'))


class TestCronAndWebhooks(ApiTestCase):
    """Cron routes and the Stripe webhook"""

    def setUp(self):
        super().setUp()
        env = patch.dict(os.environ, {'CRON_SECRET': 'cron-secret'})
        env.start()
        self.addCleanup(env.stop)
        self.auth = {'Authorization': 'Bearer cron-secret'}

    def test_cron_auth(self):
        """Cron routes need the bearer secret"""
        self.assertEqual(self.app.post('/api/cron/update-prices').status_code, 401)
        self.assertEqual(self.app.post('/api/cron/update-prices',
                                       headers={'Authorization': 'Bearer wrong'}).status_code, 401)
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(self.app.post('/api/cron/update-prices', headers=self.auth).status_code, 500)

    @patch('market_data.is_market_open', return_value=False)
    @patch('market_data.get_next_market_open', return_value=datetime(2026, 10, 19, 9, 30, tzinfo=MARKET_TZ))
    @patch('market_data.batch_fetch_prices')
    def test_skips_when_market_closed(self, mock_batch, mock_next, mock_open):
        """Closed market skips the refresh"""
        data = json.loads(self.app.post('/api/cron/update-prices', headers=self.auth).data)
        self.assertTrue(data['skipped'])
        self.assertEqual(data['reason'], 'Market is closed')
        self.assertEqual(data['next_market_open'], '2026-10-19T09:30:00-04:00')
        mock_batch.assert_not_called()

    @patch('market_data.is_market_open', return_value=True)
    @patch('market_data.batch_fetch_prices')
    def test_updates_active_tickers(self, mock_batch, mock_open):
        """Open market refreshes active tickers"""
        mock_batch.return_value = {'successful': [{'ticker': 'SPY', 'price': 500.0, 'date': '2026-10-14'}],
                                   'failed': [], 'summary': {'total': 1, 'successful': 1, 'failed': 0}}
        data = json.loads(self.app.post('/api/cron/update-prices', headers=self.auth).data)
        self.assertTrue(data['success'])
        self.assertFalse(data['skipped'])
        mock_batch.assert_called_once_with(['SPY'])

    def test_webhook_health(self):
        """Webhook health is reported"""
        data = json.loads(self.app.post('/api/cron/webhook-health', headers=self.auth).data)
        self.assertEqual(data['status'], 'healthy')

    def test_stripe_webhook_needs_signature(self):
        """Unsigned webhooks are rejected"""
        response = self.app.post('/api/webhooks/stripe', data='{}')
        self.assertEqual(response.status_code, 400)


class TestSearchEndpoint(ApiTestCase):
    """Yahoo Finance ticker search"""

    @patch('app.requests.get')
    def test_search(self, mock_get):
        """Quotes are reduced to symbol, name, type and exchange"""
        mock_response = MagicMock()
        mock_response.json.return_value = {'quotes': [
            {'symbol': 'AAPL', 'shortname': 'Apple Inc.', 'quoteType': 'EQUITY', 'exchange': 'NMS'},
        ]}
        mock_get.return_value = mock_response

        data = json.loads(self.app.get('/search?q=apple').data)
        self.assertEqual(data, [{'symbol': 'AAPL', 'name': 'Apple Inc.', 'type': 'EQUITY', 'exch': 'NMS'}])

    def test_empty_query(self):
        """An empty query returns nothing"""
        self.assertEqual(json.loads(self.app.get('/search').data), [])

    @patch('app.requests.get', side_effect=requests.ConnectionError('offline'))
    def test_search_failure(self, mock_get):
        """Search failures return nothing"""
        self.assertEqual(json.loads(self.app.get('/search?q=apple').data), [])
