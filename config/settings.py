"""
Settings Configuration
Environment-driven configuration validated with Pydantic.
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LLMSettings(BaseSettings):
    """Model backend configuration"""
    provider: str = Field(default="anthropic", description="LLM provider: anthropic, openai")
    model_name: Optional[str] = Field(default="glm-4.7", description="Model id")
    base_url: Optional[str] = Field(
        default="https://api.z.ai/api/anthropic/v1",
        description="API base URL (Anthropic-compatible gateway by default)",
    )
    temperature: float = Field(default=0.0, description="Sampling temperature")
    max_tokens: int = Field(default=4096, description="Max generated tokens")
    timeout: float = Field(default=120.0, description="Client timeout (seconds)")

    # API Keys
    api_key: Optional[str] = Field(default=None, description="Generic API key")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API Key")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API Key")

    class Config:
        env_prefix = "LLM_"


class HttpSettings(BaseSettings):
    """Web fetch configuration"""
    user_agent: str = Field(
        default="Mozilla/5.0 (compatible; gomi-data-collector/2.0)",
        description="User agent for source fetches",
    )
    search_user_agent: str = Field(
        default="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko)",
        description="User agent for the web search tool",
    )
    timeout_ms: int = Field(default=20_000, description="Per-request timeout (ms)")
    max_download_bytes: int = Field(default=20 * 1024 * 1024, description="Response size cap (bytes)")

    class Config:
        env_prefix = "HTTP_"


class PipelineSettings(BaseSettings):
    """Run-level configuration"""
    data_root: str = Field(default="data", description="Dataset root directory")
    work_root: str = Field(default=".tmp/generator-runs", description="Per-run working directories")
    max_total_ms: int = Field(default=20 * 60_000, description="Whole-run time budget (ms)")
    max_step_ms: int = Field(default=5 * 60_000, description="Per-step cap (ms)")
    max_model_ms: int = Field(default=60_000, description="Per model call cap (ms)")
    log_format: str = Field(default="pretty", description="Terminal event format: pretty, compact")
    mode: str = Field(default="fast", description="fast fails on any extractor error; thorough tolerates them")

    class Config:
        env_prefix = "PIPELINE_"


class DiscoverSettings(BaseSettings):
    """Discover engine configuration"""
    max_rounds: int = Field(default=3)
    max_steps: int = Field(default=20, description="Tool-loop iterations per round")
    max_candidates: int = Field(default=30)
    max_fetches: int = Field(default=20)
    link_depth: int = Field(default=1)
    stop_mode: str = Field(default="quality", description="coverage or quality")

    schedule_threshold: float = Field(default=0.82)
    separation_threshold: float = Field(default=0.78)
    require_machine_readable_schedule: bool = Field(default=True)
    min_coverage_schedule: float = Field(default=0.75)
    min_coverage_separation: float = Field(default=0.7)
    max_noise_ratio: float = Field(default=0.12)
    min_cleanup_pass_rate: float = Field(default=0.85)
    freshness_half_life_days: int = Field(default=365)

    timeout_base_ms: int = Field(default=35_000)
    timeout_step_ms: int = Field(default=10_000)
    timeout_max_ms: int = Field(default=90_000)
    soft_fail: bool = Field(default=True)

    search_cap: int = Field(default=3)
    fetch_cap: int = Field(default=12)
    seed_query_count: int = Field(default=3)
    max_host_switches: int = Field(default=4)
    max_query_dup_ratio: float = Field(default=0.15)

    require_official_domain: bool = Field(default=True)
    no_official_domain_strategy: str = Field(default="emergency-burst", description="fail-fast or emergency-burst")

    class Config:
        env_prefix = "DISCOVER_"


class CleanupSettings(BaseSettings):
    """Record cleanup configuration"""
    mode: str = Field(default="hybrid", description="deterministic or hybrid")
    max_model_ms: int = Field(default=8_000)
    chunk_bytes: int = Field(default=6_000)
    max_chunks: int = Field(default=8)
    min_pass_rate: float = Field(default=0.9)
    max_noise_ratio: float = Field(default=0.08)

    class Config:
        env_prefix = "CLEANUP_"


class HtmlSettings(BaseSettings):
    """HTML executor configuration"""
    follow_links: bool = Field(default=True)
    max_follow_links: int = Field(default=2)
    link_types: str = Field(default="html,csv,xlsx,pdf,api", description="Comma separated")
    min_block_score: float = Field(default=1.8)
    cleanup_failure_policy: str = Field(default="skip-source", description="skip-source, fail-run, raw-fallback")

    class Config:
        env_prefix = "HTML_"


class SelectionSettings(BaseSettings):
    """Primary source selection configuration"""
    mode: str = Field(default="hybrid", description="hybrid, deterministic, llm-first")
    top_k: int = Field(default=3)
    max_model_ms: int = Field(default=12_000)
    confidence_threshold: float = Field(default=0.7)
    evidence_bytes: int = Field(default=12_000)

    class Config:
        env_prefix = "SELECTION_"


class Settings(BaseSettings):
    """Aggregated settings"""

    llm: LLMSettings = Field(default_factory=LLMSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    discover: DiscoverSettings = Field(default_factory=DiscoverSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    html: HtmlSettings = Field(default_factory=HtmlSettings)
    selection: SelectionSettings = Field(default_factory=SelectionSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def load_from_env_file(cls, env_path: Optional[Path] = None) -> "Settings":
        """Load settings after applying a .env file (``config/.env`` by default)."""
        if env_path is None:
            env_path = Path(__file__).parent / ".env"

        if env_path.exists():
            from dotenv import load_dotenv
            load_dotenv(env_path)

        return cls(
            llm=LLMSettings(),
            http=HttpSettings(),
            pipeline=PipelineSettings(),
            discover=DiscoverSettings(),
            cleanup=CleanupSettings(),
            html=HtmlSettings(),
            selection=SelectionSettings(),
        )


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings singleton"""
    return Settings.load_from_env_file()


def get_llm_settings() -> LLMSettings:
    return get_settings().llm


def get_http_settings() -> HttpSettings:
    return get_settings().http


def get_pipeline_settings() -> PipelineSettings:
    return get_settings().pipeline
