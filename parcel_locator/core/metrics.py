"""
Prometheus metrics definitions for monitoring the Parcel Locator.
Counters and histograms for the pipeline stages, external services and caches.
"""

from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    generate_latest
)
import time
import psutil
import logging

logger = logging.getLogger(__name__)

# =======================
# LOCALISATION METRICS
# =======================

# Counter for localisation requests
localization_counter = Counter(
    'localization_total',
    'Total number of localisation requests',
    ['status', 'source']  # status: success/no_match/error, source: exif/visual_match
)

# Histogram for pipeline stage durations
pipeline_stage_time = Histogram(
    'localization_stage_seconds',
    'Time spent in each pipeline stage',
    ['stage'],  # stage: annotation/addresses/geocoding/zone/matching/total
    buckets=(0.1, 0.5, 1, 2, 5, 10, 20, 45, 90)
)

# Counters for candidate flow through the pipeline
candidates_enumerated = Counter(
    'zone_candidates_enumerated_total',
    'Parcels returned by the zone enumerator'
)

candidates_eliminated = Counter(
    'candidates_eliminated_total',
    'Candidates eliminated by a hard criterion',
    ['reason']
)

candidates_returned = Counter(
    'candidates_returned_total',
    'Candidates returned to callers after ranking'
)

deadline_exceeded = Counter(
    'pipeline_deadline_exceeded_total',
    'Requests that hit the overall deadline and returned partial results'
)

top_score_gauge = Gauge(
    'localization_top_score',
    'Global score of the best candidate of the latest request'
)

# =======================
# API METRICS
# =======================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request latencies',
    ['method', 'endpoint'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60)
)

# =======================
# EXTERNAL SERVICE METRICS
# =======================

external_api_calls = Counter(
    'external_api_calls_total',
    'Total external API calls',
    ['service', 'endpoint', 'status']
)

external_api_latency = Histogram(
    'external_api_latency_seconds',
    'External API call latencies',
    ['service', 'endpoint'],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30)
)

api_errors = Counter(
    'api_errors_total',
    'Total API errors',
    ['service', 'error_type']
)

# =======================
# CACHE METRICS
# =======================

cache_hits = Counter(
    'cache_hits_total',
    'Total cache hits',
    ['cache_type']  # cache_type: geocode/street_view_metadata
)

cache_misses = Counter(
    'cache_misses_total',
    'Total cache misses',
    ['cache_type']
)

cache_size = Gauge(
    'cache_entries_count',
    'Number of entries in cache',
    ['cache_type']
)

cache_hit_rate = Gauge(
    'cache_hit_rate_percent',
    'Cache hit rate percentage',
    ['cache_type']
)

cache_operations = Counter(
    'cache_operations_total',
    'Total cache operations',
    ['cache_type', 'operation']  # operation: get_hit, get_miss, set, evict_expired
)

# =======================
# VISION METRICS
# =======================

annotation_operations = Counter(
    'annotation_operations_total',
    'Total image annotation calls',
    ['provider', 'status']
)

annotation_processing_time = Histogram(
    'annotation_processing_seconds',
    'Image annotation duration',
    ['provider'],
    buckets=(0.5, 1, 2, 5, 10, 20, 30)
)

# =======================
# DATABASE METRICS
# =======================

db_operations = Counter(
    'database_operations_total',
    'Total database operations',
    ['operation', 'table', 'status']
)

db_query_time = Histogram(
    'database_query_seconds',
    'Database query execution time',
    ['operation', 'table'],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5)
)

# =======================
# SYSTEM METRICS
# =======================

cpu_usage = Gauge('system_cpu_usage_percent', 'CPU usage percentage')
memory_usage = Gauge('system_memory_usage_percent', 'Memory usage percentage')
memory_bytes = Gauge('system_memory_bytes', 'Memory usage in bytes')

app_uptime = Gauge('application_uptime_seconds', 'Application uptime in seconds')
app_info = Info('application_info', 'Application metadata')

_started_at = time.time()

# =======================
# HELPER FUNCTIONS & DECORATORS
# =======================

def track_request_metrics(method, endpoint, status_code):
    """Track HTTP request metrics."""
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code
    ).inc()


def track_localization(status, source, top_score=None):
    """Track the outcome of a localisation request."""
    localization_counter.labels(status=status, source=source).inc()
    if top_score is not None:
        top_score_gauge.set(top_score)


def track_external_api_call(service, endpoint, status, latency=None):
    """Track external API call metrics."""
    external_api_calls.labels(
        service=service,
        endpoint=endpoint,
        status=status
    ).inc()

    if latency is not None:
        external_api_latency.labels(
            service=service,
            endpoint=endpoint
        ).observe(latency)


def track_annotation(provider, status, processing_time=None):
    annotation_operations.labels(provider=provider, status=status).inc()
    if processing_time is not None:
        annotation_processing_time.labels(provider=provider).observe(processing_time)


def update_system_metrics():
    """Update system resource metrics."""
    try:
        cpu_usage.set(psutil.cpu_percent(interval=None))
        memory = psutil.virtual_memory()
        memory_usage.set(memory.percent)
        memory_bytes.set(memory.used)
    except (psutil.Error, OSError) as e:
        logger.error(f"Error updating system metrics: {e}")
    app_uptime.set(time.time() - _started_at)


__all__ = [
    'localization_counter', 'pipeline_stage_time', 'candidates_enumerated', 'candidates_eliminated',
    'candidates_returned', 'deadline_exceeded', 'http_requests_total', 'http_request_duration',
    'external_api_calls', 'external_api_latency', 'api_errors', 'cache_hits', 'cache_misses',
    'cache_size', 'cache_hit_rate', 'cache_operations', 'app_info', 'track_request_metrics',
    'track_localization', 'track_external_api_call', 'track_annotation', 'update_system_metrics',
    'db_operations', 'db_query_time', 'generate_latest',
]
