"""
Configuration Management Module
"""
from .settings import (
    Settings,
    get_settings,
    get_llm_settings,
    get_http_settings,
    get_pipeline_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "get_llm_settings",
    "get_http_settings",
    "get_pipeline_settings",
]
