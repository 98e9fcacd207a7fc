"""
LLM Factory
Builds the configured model backend from ``LLMSettings``.
"""
from typing import Optional
import logging

from .base import BaseLLM
from .openai_llm import OpenAILLM
from .anthropic_llm import AnthropicLLM
from utils.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "glm-4.7",
}


def get_llm(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs,
) -> BaseLLM:
    """
    Create a model backend.

    Reads ``LLM_*`` settings; explicit arguments win. The generic
    ``LLM_API_KEY`` is used when the provider-specific key is unset.

    Example:
        llm = get_llm()
        llm = get_llm(provider="openai", model="gpt-4o", base_url="http://localhost:8000/v1")
    """
    from config import get_llm_settings

    settings = get_llm_settings()

    provider = (provider or settings.provider or "anthropic").lower()
    model = model or settings.model_name or DEFAULT_MODELS.get(provider)

    provider_keys = {
        "openai": settings.openai_api_key,
        "anthropic": settings.anthropic_api_key,
    }
    api_key = kwargs.pop("api_key", None) or provider_keys.get(provider) or settings.api_key
    base_url = kwargs.pop("base_url", None) or settings.base_url

    for key, value in (
        ("temperature", settings.temperature),
        ("max_tokens", settings.max_tokens),
        ("timeout", settings.timeout),
    ):
        kwargs.setdefault(key, value)

    logger.debug("Creating LLM provider=%s model=%s", provider, model)
    if provider == "openai":
        return OpenAILLM(model=model, api_key=api_key, base_url=base_url, **kwargs)
    if provider == "anthropic":
        return AnthropicLLM(model=model, api_key=api_key, base_url=base_url, **kwargs)
    raise ConfigurationError(f"Unsupported LLM provider: {provider}", {"supported": sorted(DEFAULT_MODELS)})
