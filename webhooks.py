"""Stripe subscription webhooks: verification, idempotency, handlers and health."""

import json
import os
from datetime import datetime, timedelta, timezone

import stripe

import database

# ==============================================================================
# CONSTANTS
# ==============================================================================

HEALTH_WINDOW_HOURS = 24

# ==============================================================================
# END CONSTANTS
# ==============================================================================


def _timestamp_to_iso(timestamp):
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat(timespec='seconds')


def _object_id(value):
    """Stripe sends expandable fields as an id string or an object with an id."""
    if isinstance(value, dict):
        return value.get('id')
    return value


def get_subscription_period_end(subscription):
    """current_period_end of the first subscription item, as ISO datetime (or None)."""
    items = (subscription.get('items') or {}).get('data') or []
    if items and items[0].get('current_period_end'):
        return _timestamp_to_iso(items[0]['current_period_end'])
    return None


def retrieve_subscription(subscription_id):
    stripe.api_key = os.environ.get('STRIPE_SECRET_KEY')
    return stripe.Subscription.retrieve(subscription_id)


def _user_for_customer(customer, event_type):
    customer_id = _object_id(customer)
    if not customer_id:
        print(f"[WEBHOOK] {event_type}: missing customer ID")
        return None
    user = database.get_user_by_customer_id(customer_id)
    if not user:
        print(f"[WEBHOOK] {event_type}: no user found for customer {customer_id}")
    return user


# ==============================================================================
# EVENT HANDLERS
# ==============================================================================

def handle_checkout_session_completed(session):
    user_id = (session.get('metadata') or {}).get('userId')
    if not user_id:
        print("[WEBHOOK] checkout.session.completed: missing userId in metadata")
        return

    subscription_id = _object_id(session.get('subscription'))
    if not subscription_id:
        print("[WEBHOOK] checkout.session.completed: missing subscription ID")
        return

    customer_id = _object_id(session.get('customer'))
    if not customer_id:
        print("[WEBHOOK] checkout.session.completed: missing customer ID")
        return

    if not database.get_user(user_id):
        print(f"[WEBHOOK] checkout.session.completed: no user {user_id}")
        return

    fields = {
        'subscription_tier': 'PRO',
        'stripe_customer_id': customer_id,
        'stripe_subscription_id': subscription_id,
        'subscription_status': 'active',
        'subscription_start_date': datetime.now(timezone.utc).isoformat(timespec='seconds'),
    }
    period_end = get_subscription_period_end(retrieve_subscription(subscription_id))
    if period_end:
        fields['subscription_ends_at'] = period_end

    database.update_user(user_id, **fields)
    print(f"[WEBHOOK] checkout.session.completed: activated PRO for user {user_id}")


def handle_invoice_payment_succeeded(invoice):
    subscription_id = _object_id(
        ((invoice.get('parent') or {}).get('subscription_details') or {}).get('subscription')
    )
    if not subscription_id:
        return

    period_end = get_subscription_period_end(retrieve_subscription(subscription_id))

    user = _user_for_customer(invoice.get('customer'), 'invoice.payment_succeeded')
    if not user:
        return

    fields = {'subscription_status': 'active'}
    if period_end:
        fields['subscription_ends_at'] = period_end
    database.update_user(user['id'], **fields)
    print(f"[WEBHOOK] invoice.payment_succeeded: extended billing for user {user['id']}")


def handle_invoice_payment_failed(invoice):
    user = _user_for_customer(invoice.get('customer'), 'invoice.payment_failed')
    if not user:
        return
    database.update_user(user['id'], subscription_status='past_due')
    print(f"[WEBHOOK] invoice.payment_failed: set past_due for user {user['id']}")


def handle_subscription_updated(subscription):
    user = _user_for_customer(subscription.get('customer'), 'customer.subscription.updated')
    if not user:
        return

    fields = {'subscription_status': subscription.get('status')}
    period_end = get_subscription_period_end(subscription)
    if period_end:
        fields['subscription_ends_at'] = period_end
    database.update_user(user['id'], **fields)
    print(f"[WEBHOOK] customer.subscription.updated: status={subscription.get('status')} for user {user['id']}")


def handle_subscription_deleted(subscription):
    user = _user_for_customer(subscription.get('customer'), 'customer.subscription.deleted')
    if not user:
        return

    # subscription_ends_at is left in place for the grace period
    database.update_user(
        user['id'],
        subscription_tier='FREE',
        subscription_status='canceled',
        stripe_subscription_id=None,
    )
    print(f"[WEBHOOK] customer.subscription.deleted: reverted to FREE for user {user['id']}")


EVENT_HANDLERS = {
    'checkout.session.completed': handle_checkout_session_completed,
    'invoice.payment_succeeded': handle_invoice_payment_succeeded,
    'invoice.payment_failed': handle_invoice_payment_failed,
    'customer.subscription.updated': handle_subscription_updated,
    'customer.subscription.deleted': handle_subscription_deleted,
}


# ==============================================================================
# END EVENT HANDLERS
# ==============================================================================


def handle_webhook(payload, sig_header):
    """
    Verify and process one Stripe webhook delivery.

    Events are processed at most once: the event id is stored after a
    successful handler run, and repeated deliveries are acknowledged as
    duplicates without running the handler again.

    Args:
        payload: Raw request body (bytes or str)
        sig_header: Value of the Stripe-Signature header

    Returns:
        Tuple of (response_body_dict, http_status)
    """
    if not sig_header:
        print("[WEBHOOK] Missing stripe-signature header")
        return {'error': 'Missing stripe-signature header'}, 400

    secret = os.environ.get('STRIPE_WEBHOOK_SECRET')
    if not secret:
        print("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
        return {'error': 'Webhook secret not configured'}, 500

    if isinstance(payload, bytes):
        payload = payload.decode('utf-8')

    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError) as e:
        print(f"[WEBHOOK] Signature verification failed: {e}")
        return {'error': 'Invalid signature'}, 400

    event_id = event['id']
    event_type = event['type']
    print(f"[WEBHOOK] Received event: {event_type} ({event_id})")

    if database.get_webhook_event(event_id):
        print(f"[WEBHOOK] Duplicate event {event_id}, skipping")
        return {'received': True, 'duplicate': True}, 200

    handler = EVENT_HANDLERS.get(event_type)
    try:
        if handler:
            handler(event['data']['object'])
        else:
            print(f"[WEBHOOK] Unhandled event type: {event_type}")

        database.insert_webhook_event(event_id, event_type)
        database.insert_webhook_log(event_id, event_type, True)
    except Exception as e:
        print(f"[WEBHOOK] Error handling {event_type}: {e}")
        database.insert_webhook_log(event_id, event_type, False, str(e))
        return {'error': 'Webhook handler failed'}, 500

    return {'received': True}, 200


def get_webhook_health(hours=HEALTH_WINDOW_HOURS, now=None):
    """
    Webhook processing health over the last `hours` hours.

    Returns:
        Dict with status ('alert' when anything failed, else 'healthy'),
        period, total_processed, failures and success_rate (0-1)
    """
    now = now or datetime.now()
    since = (now - timedelta(hours=hours)).isoformat(timespec='seconds')
    logs = database.list_webhook_logs_since(since)

    total = len(logs)
    failures = sum(1 for log in logs if not log['success'])

    if failures > 0:
        print(f"[WEBHOOK-ALERT] {failures} failed webhook(s) in the last {hours}h")

    return {
        'status': 'alert' if failures > 0 else 'healthy',
        'period': f'{hours}h',
        'total_processed': total,
        'failures': failures,
        'success_rate': (total - failures) / total if total > 0 else 1,
    }
