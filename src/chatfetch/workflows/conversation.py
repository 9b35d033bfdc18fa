"""Conversation model shared by the chat pipeline and the streaming client.

A conversation is an ordered list of user/assistant messages. During one
exchange it only grows, except that the trailing assistant message is the
in-progress reply and receives streamed tokens in place. Two assistant
messages are never adjacent: retry and edit both drop the old reply before a
new one is streamed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from ..core.keys import K_CONTENT, K_ROLE


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatMessage:
    role: Role
    content: str

    def to_wire(self) -> Dict[str, str]:
        return {K_ROLE: self.role.value, K_CONTENT: self.content}

    @classmethod
    def from_wire(cls, payload: Dict[str, str]) -> "ChatMessage":
        return cls(role=Role(payload[K_ROLE]), content=str(payload.get(K_CONTENT) or ""))


WireConversation = Tuple[Dict[str, str], ...]


class Conversation:
    def __init__(self, messages: Optional[Iterable[ChatMessage]] = None) -> None:
        self._messages: List[ChatMessage] = []
        for message in messages or ():
            self._append(message)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self._messages)

    def __getitem__(self, index: int) -> ChatMessage:
        return self._messages[index]

    @property
    def last(self) -> Optional[ChatMessage]:
        return self._messages[-1] if self._messages else None

    def _append(self, message: ChatMessage) -> None:
        last = self.last
        if message.role is Role.ASSISTANT and last is not None and last.role is Role.ASSISTANT:
            raise ValueError("conversation cannot hold two consecutive assistant messages")
        self._messages.append(message)

    def append_user(self, content: str) -> ChatMessage:
        message = ChatMessage(Role.USER, content)
        self._append(message)
        return message

    def append_token(self, token: str) -> ChatMessage:
        """Merge a streamed token into the in-progress assistant reply."""

        last = self.last
        if last is not None and last.role is Role.ASSISTANT:
            last.content += token
            return last
        message = ChatMessage(Role.ASSISTANT, token)
        self._append(message)
        return message

    def drop_trailing_assistant(self) -> Optional[ChatMessage]:
        last = self.last
        if last is not None and last.role is Role.ASSISTANT:
            return self._messages.pop()
        return None

    def prepare_retry(self) -> WireConversation:
        """Drop the trailing reply so the last user turn can be regenerated."""

        self.drop_trailing_assistant()
        if self.last is None or self.last.role is not Role.USER:
            raise ValueError("no user message to retry")
        return self.snapshot()

    def edit(self, index: int, content: str) -> WireConversation:
        """Replace a user message and discard everything after it."""

        if not content.strip():
            raise ValueError("edited content must not be blank")
        try:
            target = self._messages[index]
        except IndexError:
            raise ValueError(f"no message at index {index}") from None
        if target.role is not Role.USER:
            raise ValueError("only user messages can be edited")
        position = index if index >= 0 else len(self._messages) + index
        del self._messages[position + 1:]
        target.content = content
        return self.snapshot()

    def snapshot(self) -> WireConversation:
        return tuple(message.to_wire() for message in self._messages)

    @classmethod
    def from_wire(cls, payload: Iterable[Dict[str, str]]) -> "Conversation":
        return cls(ChatMessage.from_wire(item) for item in payload)


__all__ = ["Role", "ChatMessage", "Conversation", "WireConversation"]
