"""
LLM Module
Provider-neutral model backends.
"""
from .base import BaseLLM, LLMResponse, Message, MessageRole, ToolCall
from .openai_llm import OpenAILLM
from .anthropic_llm import AnthropicLLM
from .factory import get_llm

__all__ = [
    "BaseLLM",
    "LLMResponse",
    "Message",
    "MessageRole",
    "ToolCall",
    "OpenAILLM",
    "AnthropicLLM",
    "get_llm",
]
