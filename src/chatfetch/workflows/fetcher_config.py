"""chatfetch defaults (endpoints, headers, budgets, generation parameters).

Centralizes static defaults so the workflow modules have no embedded magic
values. These are baseline constants used to construct a policy; callers can
inject their own ChatPolicy / FetchConfig to override any of them.
"""

from __future__ import annotations

# Endpoints / headers
CHAT_ENDPOINT = "http://localhost:3000/api/chat"
HDR_USER_AGENT = "User-Agent"
HDR_ACCEPT = "Accept"
HDR_AUTHORIZATION = "Authorization"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)

# Fetch policy defaults
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0
FETCH_BUDGET_SECONDS = 60.0
WORD_LIMIT = 4000
TRUNCATION_MARKER = "..."
RETRYABLE_STATUS_FLOOR = 500

# Directive defaults
DIRECTIVE_TAG = "include-url"
DIRECTIVE_BUDGET_MS = 300_000
# Upper bound for integer directive parameters (24h in ms)
DIRECTIVE_INT_MAX = 86_400_000
STORE_PREVIEW_CHARS = 60

# Stream wire format
SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
STREAM_READ_TIMEOUT_SECONDS = 120.0
STREAM_CONNECT_TIMEOUT_SECONDS = 30.0

# Generation defaults (opaque pass-through to the upstream model)
TEMPERATURE = 0.5
MAX_TOKENS = 1000
TOP_P = 0.7

# Scrape service
SERVICE_HOST = "127.0.0.1"
SERVICE_PORT = 8080
