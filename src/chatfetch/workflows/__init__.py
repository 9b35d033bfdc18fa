"""High-level exports for the chatfetch workflows."""

from .conversation import ChatMessage, Conversation, Role
from .directives import CommandRewriter, Directive, DirectiveResolutionError, parse_directive
from .event_stream import (
    CancelSignal,
    GenerationConfig,
    StreamingTokenClient,
    StreamOutcome,
    StreamState,
)
from .extract_utils import Content, extract_text
from .pipeline import DEFAULT_POLICY, ChatPipeline, ChatPolicy
from .web_fetch import (
    FetchConfig,
    FetchError,
    FetchErrorKind,
    FetchRequest,
    FetchResult,
    ResilientFetcher,
    fetch_content,
)

__all__ = [
    "DEFAULT_POLICY",
    "CancelSignal",
    "ChatMessage",
    "ChatPipeline",
    "ChatPolicy",
    "CommandRewriter",
    "Content",
    "Conversation",
    "Directive",
    "DirectiveResolutionError",
    "FetchConfig",
    "FetchError",
    "FetchErrorKind",
    "FetchRequest",
    "FetchResult",
    "GenerationConfig",
    "ResilientFetcher",
    "Role",
    "StreamOutcome",
    "StreamState",
    "StreamingTokenClient",
    "extract_text",
    "fetch_content",
    "parse_directive",
]
