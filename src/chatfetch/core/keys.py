"""Shared schema keys to avoid magic strings across chatfetch modules."""

from __future__ import annotations

# Chat wire keys
K_ROLE = "role"
K_CONTENT = "content"
K_MESSAGES = "messages"
K_ERROR = "error"

# Generation parameters (passed through to the upstream endpoint)
K_MODEL = "model"
K_TEMPERATURE = "temperature"
K_MAX_TOKENS = "max_tokens"
K_TOP_P = "top_p"
K_STREAM = "stream"

# Scrape service request body
K_URL = "url"
K_MAX_EXECUTION_TIME = "maxExecutionTime"
K_FILTER = "filter"
K_STORE = "store"
K_MAX_WORDS = "maxWords"
