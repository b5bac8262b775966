"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY

# Webhook metrics
try:
    webhooks_received_counter = Counter(
        'subsync_webhooks_received_total',
        'Total number of webhooks applied, by gateway and resulting action',
        ['gateway', 'action']
    )
except ValueError:
    webhooks_received_counter = REGISTRY._names_to_collectors.get('subsync_webhooks_received_total')

try:
    webhook_failures_counter = Counter(
        'subsync_webhook_failures_total',
        'Total number of webhooks rejected or failed during processing',
        ['gateway', 'reason']
    )
except ValueError:
    webhook_failures_counter = REGISTRY._names_to_collectors.get('subsync_webhook_failures_total')

# Checkout metrics
try:
    checkout_sessions_counter = Counter(
        'subsync_checkout_sessions_total',
        'Total number of checkout sessions created',
        ['gateway']
    )
except ValueError:
    checkout_sessions_counter = REGISTRY._names_to_collectors.get('subsync_checkout_sessions_total')

# Lifecycle metrics
try:
    subscriptions_expired_counter = Counter(
        'subsync_subscriptions_expired_total',
        'Total number of subscriptions reverted to the free plan after the grace period'
    )
except ValueError:
    subscriptions_expired_counter = REGISTRY._names_to_collectors.get('subsync_subscriptions_expired_total')

try:
    subscriptions_past_due_counter = Counter(
        'subsync_subscriptions_past_due_total',
        'Total number of subscriptions moved into the grace period'
    )
except ValueError:
    subscriptions_past_due_counter = REGISTRY._names_to_collectors.get('subsync_subscriptions_past_due_total')

# Scheduler metrics
try:
    scheduler_runs_counter = Counter(
        'subsync_scheduler_runs_total',
        'Total number of scheduler job runs',
        ['job', 'status']
    )
except ValueError:
    scheduler_runs_counter = REGISTRY._names_to_collectors.get('subsync_scheduler_runs_total')

# Task queue metrics
try:
    tasks_processed_counter = Counter(
        'subsync_tasks_processed_total',
        'Total number of queued tasks executed, by type and outcome',
        ['task_type', 'status']
    )
except ValueError:
    tasks_processed_counter = REGISTRY._names_to_collectors.get('subsync_tasks_processed_total')

try:
    pending_tasks_gauge = Gauge(
        'subsync_pending_tasks',
        'Number of pending tasks seen at the last queue stats read'
    )
except ValueError:
    pending_tasks_gauge = REGISTRY._names_to_collectors.get('subsync_pending_tasks')
