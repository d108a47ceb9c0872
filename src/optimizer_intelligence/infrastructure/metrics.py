from prometheus_client import CollectorRegistry, Counter, Histogram

# Single registry exported by the API at /metrics; workers register on it too so the same
# names exist in every process.
registry = CollectorRegistry()

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint'], registry=registry)
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], registry=registry, buckets=(0.01,0.05,0.1,0.25,0.5,1,2,5))

TELEMETRY_INGESTED = Counter('telemetry_ingested_total', 'Telemetry records persisted', ['strategy'], registry=registry)
TELEMETRY_DUPLICATES = Counter('telemetry_duplicates_total', 'Telemetry records ignored as duplicate session ids', registry=registry)
TELEMETRY_LOW_TRUST = Counter('telemetry_low_trust_total', 'Telemetry records stored with failed validation', registry=registry)
TELEMETRY_REJECTED = Counter('telemetry_rejected_total', 'Malformed telemetry payloads', ['reason'], registry=registry)

SCORER_FALLBACKS = Counter('scorer_fallback_total', 'Scores replaced by the conservative estimate', registry=registry)
BENCHMARK_RESULTS = Counter('benchmark_results_total', 'Benchmark validations', ['kind', 'outcome'], registry=registry)

AGGREGATION_RUNS = Counter('aggregation_runs_total', 'Aggregation runs', ['status'], registry=registry)
AGGREGATION_DURATION = Histogram('aggregation_duration_seconds', 'Aggregation wall time', registry=registry, buckets=(0.1,0.5,1,5,10,30,60,300))
AGGREGATION_ROWS = Counter('aggregation_rows_upserted_total', 'Intelligence rows upserted', ['type'], registry=registry)

STRATEGY_TRANSITIONS = Counter('strategy_transitions_total', 'Strategy update status transitions', ['from_status', 'to_status'], registry=registry)
STRATEGY_TRANSITIONS_REJECTED = Counter('strategy_transitions_rejected_total', 'Rejected strategy update transitions', ['reason'], registry=registry)
CANARY_EVENTS = Counter('canary_events_total', 'Canary run lifecycle events', ['event'], registry=registry)

RETENTION_DELETED = Counter('retention_deleted_rows_total', 'Rows pruned by retention', ['table'], registry=registry)
