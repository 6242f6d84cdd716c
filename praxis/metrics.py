from prometheus_client import Counter, Gauge, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "praxis_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "praxis_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Tutoring sessions
WS_SESSIONS_ACTIVE = Gauge(
    "praxis_ws_sessions_active",
    "Initialized WebSocket tutoring sessions",
)
TURNS_TOTAL = Counter(
    "praxis_turns_total",
    "Tutoring turns by transport and outcome",
    ["transport", "outcome"],  # outcome: ok | busy | error
)
LLM_SECONDS = Histogram(
    "praxis_llm_seconds",
    "LLM generation latency in seconds",
    ["provider", "model"],
    buckets=(0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0),
)
TTS_FAILURES_TOTAL = Counter(
    "praxis_tts_failures_total",
    "Speech synthesis failures (reply sent without audio)",
    ["provider", "reason"],
)
SCOPE_LOOKUPS_TOTAL = Counter(
    "praxis_scope_lookups_total",
    "Enrollment scope lookups by outcome",
    ["outcome"],  # ok | not_enrolled | lookup_error | invalid
)
SEARCH_REQUESTS_TOTAL = Counter(
    "praxis_search_requests_total",
    "Learning-resource searches by kind and outcome",
    ["kind", "outcome"],  # kind: video | article; outcome: ok | empty | timeout | error
)
