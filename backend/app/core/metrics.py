"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name, documentation, labelnames=()):
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        # Already registered (module re-import)
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name, documentation, labelnames=()):
    try:
        return Gauge(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Ledger metrics
donations_created_counter = _counter(
    'ledger_donations_created_total',
    'Total number of donations created in pending state'
)

ledger_transitions_counter = _counter(
    'ledger_transitions_total',
    'Ledger transitions by event and outcome',
    ['event', 'outcome']
)

# Limit engine metrics
limit_rejections_counter = _counter(
    'ledger_limit_rejections_total',
    'Donation requests rejected by the contribution limit pre-check',
    ['jurisdiction']
)

aggregate_anomalies_counter = _counter(
    'ledger_aggregate_anomalies_total',
    'Aggregate decrements clamped at zero'
)

# Webhook metrics
webhook_events_counter = _counter(
    'ledger_webhook_events_total',
    'Inbound processor events by outcome',
    ['outcome']
)

# Gateway metrics
gateway_calls_counter = _counter(
    'ledger_gateway_calls_total',
    'Payment gateway calls by operation and status',
    ['operation', 'status']
)

# Review queue
open_review_items_gauge = _gauge(
    'ledger_open_review_items',
    'Number of open manual review items'
)

# Background tasks
scheduler_runs_counter = _counter(
    'ledger_scheduler_runs_total',
    'Total number of background job runs',
    ['job', 'status']
)
