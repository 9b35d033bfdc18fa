"""Shared helper functions used by the chatfetch workflows."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float = 0.0) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        return h.encode("idna").decode("ascii")
    except UnicodeError:
        return h


def is_http_url(url: str) -> bool:
    """Return True when ``url`` is an absolute http(s) URL with a host."""

    raw = (url or "").strip()
    if not raw or any(ch.isspace() for ch in raw):
        return False
    try:
        parsed = urlparse(raw)
    except ValueError:
        return False
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.hostname)


def domain_of(url: str) -> str:
    try:
        return idna_normalize(urlparse(url).hostname or "")
    except ValueError:
        return ""


def collect_environment_warnings() -> List[Dict[str, Any]]:
    """Return soft configuration problems worth surfacing before a run."""

    warnings: List[Dict[str, Any]] = []
    endpoint: Optional[str] = os.getenv("CHATFETCH_CHAT_ENDPOINT")
    if not endpoint:
        warnings.append(
            {
                "code": "chat_endpoint_default",
                "message": "CHATFETCH_CHAT_ENDPOINT not set; using the built-in localhost endpoint.",
                "remedy": "Set CHATFETCH_CHAT_ENDPOINT to the generation endpoint URL.",
            }
        )
    elif not is_http_url(endpoint):
        warnings.append(
            {
                "code": "chat_endpoint_invalid",
                "message": f"CHATFETCH_CHAT_ENDPOINT is not an http(s) URL: {endpoint}",
                "remedy": "Use an absolute URL such as https://host/api/chat.",
            }
        )
    if not os.getenv("CHATFETCH_API_TOKEN"):
        warnings.append(
            {
                "code": "api_token_missing",
                "message": "CHATFETCH_API_TOKEN not set; requests are sent without Authorization.",
                "remedy": "Set CHATFETCH_API_TOKEN if the endpoint requires a bearer token.",
            }
        )
    try:
        import lxml  # noqa: F401
    except ImportError:
        warnings.append(
            {
                "code": "lxml_missing",
                "message": "lxml is not importable; HTML extraction falls back to the slower html.parser.",
                "remedy": "pip install lxml",
            }
        )
    return warnings


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM.") == "example.com"
    assert is_http_url("https://example.com/a")
    assert not is_http_url("ftp://example.com")
    assert not is_http_url("example.com")


sanity_check()

__all__ = [
    "idna_normalize",
    "is_http_url",
    "domain_of",
    "collect_environment_warnings",
    "sanity_check",
]
