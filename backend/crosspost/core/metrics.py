"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Module reloads in tests would otherwise fail with a duplicate registration
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Publish metrics
publish_attempts_counter = _counter(
    'crosspost_publish_attempts_total',
    'Total number of per-platform publish attempts',
    ['platform', 'outcome']
)

# Scheduler metrics
scheduler_runs_counter = _counter(
    'crosspost_scheduler_runs_total',
    'Total number of scheduler job runs',
    ['status']
)

scheduler_jobs_processed_counter = _counter(
    'crosspost_scheduler_jobs_processed_total',
    'Total number of scheduled jobs processed',
    ['status']
)

scheduler_claim_conflicts_counter = _counter(
    'crosspost_scheduler_claim_conflicts_total',
    'Total number of due jobs skipped because another runner claimed them'
)

# Credential metrics
token_renewals_counter = _counter(
    'crosspost_token_renewals_total',
    'Total number of credential renewals',
    ['platform', 'status']
)

oauth_connections_counter = _counter(
    'crosspost_oauth_connections_total',
    'Total number of completed OAuth callbacks',
    ['platform', 'status']
)

# Insights metrics
insights_requests_counter = _counter(
    'crosspost_insights_requests_total',
    'Total number of per-post insights fetches',
    ['platform', 'status']
)
