"""
Intelligence Module
Model backends and bounded, decoded model calls.
"""
from .llm import (
    AnthropicLLM,
    BaseLLM,
    LLMResponse,
    Message,
    OpenAILLM,
    ToolCall,
    get_llm,
)
from .model import DecodeResult, decode_structured, run_model_text

__all__ = [
    "AnthropicLLM",
    "BaseLLM",
    "DecodeResult",
    "LLMResponse",
    "Message",
    "OpenAILLM",
    "ToolCall",
    "decode_structured",
    "get_llm",
    "run_model_text",
]
