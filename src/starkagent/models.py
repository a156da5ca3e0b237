import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ToolCall:
    """A single tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.raw_arguments or json.dumps(self.arguments),
            },
        }


@dataclass
class Message:
    """One entry of a session's conversation history."""

    role: Role
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def has_pending_tool_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)

    def to_openai(self) -> Dict[str, Any]:
        """Serialize to the chat-completions message format."""
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
            data["content"] = self.content or None
        if self.role == "tool":
            data["tool_call_id"] = self.tool_call_id
        if self.name and self.role == "tool":
            data["name"] = self.name
        return data


@dataclass
class SessionState:
    """Per-session conversation state (messages, tool call count, turn lock)."""

    session_id: str
    messages: List[Message] = field(default_factory=list)
    tool_calls_count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class AccountCredential:
    private_key: str
    address: str


class AccountSource(str, Enum):
    FIXED = "fixed"
    PER_SESSION = "per_session"
    NONE = "none"


@dataclass(frozen=True)
class ResolvedAccount:
    """Which account a session acts with, resolved once per lookup."""

    source: AccountSource
    address: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)

    @property
    def exists(self) -> bool:
        return self.source is not AccountSource.NONE


@dataclass
class BackgroundAction:
    """A repeating action bound to one session. At most one per session."""

    session_id: str
    description: str
    interval_seconds: float
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackgroundAction":
        return cls(
            session_id=str(data["session_id"]),
            description=str(data["description"]),
            interval_seconds=float(data["interval_seconds"]),
        )


@dataclass
class NewsItem:
    title: str
    link: str
    source: str = ""
    published: str = ""
    summary: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "title": self.title,
            "link": self.link,
            "source": self.source,
            "published": self.published,
            "summary": self.summary,
        }


@dataclass
class Quote:
    """A DEX aggregator price quote (amounts in the tokens' smallest units)."""

    quote_id: str
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Quote":
        return cls(
            quote_id=str(data.get("quoteId", "")),
            sell_token=str(data.get("sellTokenAddress", "")),
            buy_token=str(data.get("buyTokenAddress", "")),
            sell_amount=int(str(data.get("sellAmount", "0")), 0),
            buy_amount=int(str(data.get("buyAmount", "0")), 0),
            raw=data,
        )
