"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Module may be re-imported (tests, reloads); reuse the registered collector
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Credit pipeline metrics
credits_consumed_counter = _counter(
    'tutor_credits_consumed_total',
    'Total number of credits consumed by settled AI operations',
    ['transaction_type']
)

credit_settlements_counter = _counter(
    'tutor_credit_settlements_total',
    'Credit settlements by outcome',
    ['status']
)

credit_authorization_rejections_counter = _counter(
    'tutor_credit_authorization_rejections_total',
    'Requests rejected by the credit authorization stage',
    ['transaction_type']
)

credits_allocated_counter = _counter(
    'tutor_credits_allocated_total',
    'Total number of credits allocated',
    ['transaction_type']
)

credits_expired_counter = _counter(
    'tutor_credits_expired_total',
    'Total number of credits removed by expiration'
)

# Scheduler metrics
scheduler_runs_counter = _counter(
    'tutor_scheduler_runs_total',
    'Total number of scheduler job runs',
    ['job', 'status']
)

# Auth metrics
login_attempts_counter = _counter(
    'tutor_login_attempts_total',
    'Total number of login attempts',
    ['status']
)
