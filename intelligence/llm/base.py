"""
Base LLM
Provider-neutral chat abstraction used by discovery, cleanup and selection.
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum
import json


class MessageRole(str, Enum):
    """Message role"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """One chat message"""
    role: MessageRole
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content)


@dataclass
class ToolCall:
    """A tool invocation requested by the model"""
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class LLMResponse:
    """Model response"""
    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: Optional[str] = None
    raw_response: Optional[Any] = None

    @property
    def has_tool_calls(self) -> bool:
        return self.tool_calls is not None and len(self.tool_calls) > 0


def schema_instruction(json_schema: Dict[str, Any]) -> str:
    """Prompt suffix asking for a bare JSON object matching ``json_schema``."""
    return (
        "Respond with a single JSON object only (no prose, no markdown) that conforms to this JSON schema:\n"
        + json.dumps(json_schema, ensure_ascii=False)
    )


class BaseLLM(ABC):
    """
    Abstract model backend.

    Implementations take OpenAI function-calling tool definitions and an
    optional JSON schema constraint, and return an :class:`LLMResponse`.
    Timeouts are enforced by the caller (see ``intelligence.model``).
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        **kwargs,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.extra_config = kwargs

    @property
    @abstractmethod
    def provider(self) -> str:
        """Provider name"""
        pass

    @abstractmethod
    async def acomplete(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        json_schema: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> LLMResponse:
        """
        Generate one response.

        Args:
            messages: conversation so far
            tools: tool definitions (OpenAI function calling format)
            json_schema: when set, the model is asked for a matching JSON object
            **kwargs: per-call overrides (temperature, max_tokens)
        """
        pass

    async def achat(self, user_message: str, system_prompt: Optional[str] = None) -> str:
        messages = []
        if system_prompt:
            messages.append(Message.system(system_prompt))
        messages.append(Message.user(user_message))

        response = await self.acomplete(messages)
        return response.content

    async def aclose(self) -> None:
        """Release the underlying client (no-op by default)."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model}, provider={self.provider})"
