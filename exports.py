from datetime import date

import pandas as pd

PL_REPORT_COLUMNS = [
    'Date Opened', 'Date Closed', 'Ticker', 'Type', 'Strike',
    'Premium', 'Quantity', 'Status', 'Realized P&L', 'Notes',
]
DEPOSIT_COLUMNS = ['Date', 'Type', 'Amount', 'SPY Price', 'SPY Shares', 'Notes']


def format_number(value):
    if value is None:
        return ''
    return f'{value:.2f}'


def _frame_to_csv(frame, header=True):
    return frame.to_csv(index=False, header=header, lineterminator='\n')


def _block_to_csv(title, rows):
    """A titled two-column label/value block."""
    block = pd.DataFrame([[title, '']] + [list(row) for row in rows], columns=['label', 'value'])
    return _frame_to_csv(block, header=False)


def _closed_trade_pnl(trade, positions):
    """
    Realized P&L and close date of one trade for the report.

    CLOSED or EXPIRED options realize their premium. ASSIGNED trades realize
    the linked position's gain plus the premium once the position is closed.
    """
    premium = trade['premium']
    if trade['status'] in ('CLOSED', 'EXPIRED'):
        return premium, trade['close_date']

    if trade['status'] == 'ASSIGNED':
        if trade['type'] == 'PUT':
            position = next((p for p in positions if p['assignment_trade_id'] == trade['id']), None)
        else:
            position = next((p for p in positions if p['id'] == trade['position_id']), None)
        if position and position['realized_gain_loss'] is not None and position['closed_date']:
            return position['realized_gain_loss'] + premium, position['closed_date']

    return 0, None


def build_pl_report_csv(trades, positions, start_date=None, end_date=None):
    """
    CSV P&L report: one row per trade, then a summary block.

    Args:
        trades: Trade dicts (already filtered to the date range), oldest first
        positions: The user's positions, used for assigned trades
        start_date: Start of the filter, echoed in a Date Range block
        end_date: End of the filter, echoed in a Date Range block

    Returns:
        CSV text
    """
    rows = []
    total_premium = 0
    total_realized = 0
    closed_count = 0

    for trade in trades:
        total_premium += trade['premium']
        realized, closed_date = _closed_trade_pnl(trade, positions)
        if closed_date:
            closed_count += 1
            total_realized += realized

        rows.append([
            trade['open_date'][:10],
            closed_date[:10] if closed_date else '',
            trade['ticker'],
            trade['type'],
            format_number(trade['strike_price']),
            format_number(trade['premium']),
            trade['contracts'],
            trade['status'],
            format_number(realized) if closed_date else '',
            trade.get('notes') or '',
        ])

    summary = [
        ('Total Trades', len(trades)),
        ('Closed Trades', closed_count),
        ('Open Trades', len(trades) - closed_count),
        ('Total Premium Collected', format_number(total_premium)),
        ('Total Realized P&L', format_number(total_realized)),
    ]
    if total_premium > 0:
        summary.append(('Average Premium per Trade', format_number(total_premium / len(trades))))

    csv_text = _frame_to_csv(pd.DataFrame(rows, columns=PL_REPORT_COLUMNS))
    csv_text += '\n' + _block_to_csv('Summary', summary)

    if start_date or end_date:
        date_range = []
        if start_date:
            date_range.append(('Start Date', str(start_date)[:10]))
        if end_date:
            date_range.append(('End Date', str(end_date)[:10]))
        csv_text += '\n' + _block_to_csv('Date Range', date_range)

    return csv_text


def build_deposits_csv(deposits):
    """
    CSV of every deposit and withdrawal (amounts and shares unsigned), then a summary.

    Args:
        deposits: Deposit dicts, newest first
    """
    rows = []
    total_deposits = 0
    total_withdrawals = 0
    deposit_count = 0
    withdrawal_count = 0
    total_spy_shares = 0

    for deposit in deposits:
        amount = abs(deposit['amount'])
        if deposit['type'] == 'DEPOSIT':
            total_deposits += amount
            deposit_count += 1
        else:
            total_withdrawals += amount
            withdrawal_count += 1
        total_spy_shares += deposit['spy_shares']

        rows.append([
            deposit['deposit_date'][:10],
            deposit['type'],
            format_number(amount),
            format_number(deposit['spy_price']),
            format_number(abs(deposit['spy_shares'])),
            deposit.get('notes') or '',
        ])

    net_invested = total_deposits - total_withdrawals
    avg_cost_basis = net_invested / total_spy_shares if total_spy_shares != 0 else 0

    summary = [
        ('Total Deposits', format_number(total_deposits)),
        ('Deposit Count', deposit_count),
        ('Total Withdrawals', format_number(total_withdrawals)),
        ('Withdrawal Count', withdrawal_count),
        ('Net Invested', format_number(net_invested)),
        ('Total SPY Shares', format_number(total_spy_shares)),
        ('Average SPY Cost Basis', format_number(avg_cost_basis)),
        ('Total Transactions', len(deposits)),
    ]

    csv_text = _frame_to_csv(pd.DataFrame(rows, columns=DEPOSIT_COLUMNS))
    csv_text += '\n' + _block_to_csv('Summary', summary)

    if deposits:
        csv_text += '\n' + _block_to_csv('Date Range', [
            ('First Transaction', deposits[-1]['deposit_date'][:10]),
            ('Last Transaction', deposits[0]['deposit_date'][:10]),
        ])

    return csv_text


def generate_export_filename(prefix, today=None):
    today = today or date.today()
    return f"{prefix}-{today.strftime('%Y-%m-%d')}.csv"
