"""
Prometheus metrics for the execution engine.

Labels stay low-cardinality: job kind, platform, outcome. Tenant ids go to logs.
"""
from prometheus_client import Counter, Histogram, Gauge

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Job Metrics
# ============================================

job_runs_total = Counter(
    'job_runs_total',
    'Per-tenant unit-of-work runs',
    ['job_kind', 'outcome']
)

job_tenant_failures_total = Counter(
    'job_tenant_failures_total',
    'Tenant units of work that raised and were isolated',
    ['job_kind']
)

job_tick_duration = Histogram(
    'job_tick_duration_seconds',
    'Duration of a full tick across all tenants',
    ['job_kind'],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0]
)

# ============================================
# Webhook Metrics
# ============================================

webhook_attempts_total = Counter(
    'webhook_attempts_total',
    'Outbound webhook delivery attempts',
    ['status']
)

inbound_webhooks_total = Counter(
    'inbound_webhooks_total',
    'Inbound platform webhooks',
    ['platform', 'result']
)

# ============================================
# Adapter Metrics
# ============================================

adapter_requests_total = Counter(
    'adapter_requests_total',
    'Outbound platform API calls',
    ['platform', 'outcome']
)

circuit_breaker_state = Gauge(
    'circuit_breaker_open',
    'Open circuit breakers per platform',
    ['platform']
)

# ============================================
# NDR Metrics
# ============================================

ndr_assignments_total = Counter(
    'ndr_assignments_total',
    'NDR records assigned to agents',
    ['mode']
)


def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """Record HTTP request metrics."""
    http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
    http_request_duration.labels(method=method, endpoint=endpoint).observe(duration_seconds)


def track_job_run(job_kind: str, outcome: str):
    job_runs_total.labels(job_kind=job_kind, outcome=outcome).inc()


def track_tenant_failure(job_kind: str):
    job_tenant_failures_total.labels(job_kind=job_kind).inc()


def track_webhook_attempt(status: str):
    webhook_attempts_total.labels(status=status).inc()


def track_inbound_webhook(platform: str, result: str):
    inbound_webhooks_total.labels(platform=platform, result=result).inc()


def track_adapter_request(platform: str, outcome: str):
    adapter_requests_total.labels(platform=platform, outcome=outcome).inc()


def track_circuit_transition(platform: str, opened: bool):
    """Opened breakers increment the gauge, closed ones decrement it."""
    if opened:
        circuit_breaker_state.labels(platform=platform).inc()
    else:
        circuit_breaker_state.labels(platform=platform).dec()


def track_ndr_assignment(mode: str):
    ndr_assignments_total.labels(mode=mode).inc()


def track_tick_duration(job_kind: str, duration_seconds: float):
    job_tick_duration.labels(job_kind=job_kind).observe(duration_seconds)
