"""
Configuration for Brief Engine
==============================

Environment variables:
- GATEWAY_BASE_URL: OpenAI-compatible gateway (default: https://openrouter.ai/api/v1)
- GATEWAY_API_KEY: API key for the gateway (reasoning, JSON output, review, embeddings)
- REASONING_MODEL: Tool-loop model (default: google/gemini-2.5-flash)
- WRITER_MODEL: JSON output / review model (default: google/gemini-2.5-flash)
- EMBEDDING_MODEL: Embeddings for vector law search
- CITATIONS_BASE_URL / CITATIONS_API_KEY / CITATIONS_MODEL: citation-capable backend
- LAW_SEARCH_BASE_URL / LAW_SEARCH_API_KEY: authority search service
- REASONING_MAX_ROUNDS / REASONING_MAX_SEARCHES / REASONING_SOFT_TIMEOUT: tool-loop budgets
"""

from typing import Optional, List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Gateway (OpenAI-compatible chat completions)
    gateway_base_url: str = "https://openrouter.ai/api/v1"
    gateway_api_key: Optional[str] = None
    reasoning_model: str = "google/gemini-2.5-flash"
    writer_model: str = "google/gemini-2.5-flash"
    embedding_model: str = "openai/text-embedding-3-small"

    # Citations backend (messages API with document blocks)
    citations_base_url: str = "https://api.anthropic.com/v1"
    citations_api_key: Optional[str] = None
    citations_model: str = "claude-haiku-4-5"
    citations_api_version: str = "2023-06-01"

    # Law search service
    law_search_base_url: Optional[str] = None
    law_search_api_key: Optional[str] = None
    search_default_limit: int = 3

    # Reasoning loop budgets
    reasoning_max_rounds: int = 6
    reasoning_max_searches: int = 6
    reasoning_soft_timeout: float = 25.0
    reasoning_timeout: float = 120.0
    reasoning_max_tokens: int = 16384
    json_output_max_tokens: int = 32768
    writer_max_tokens: int = 8192
    review_max_tokens: int = 4096

    # Content limits
    max_chunk_length: int = 500
    max_law_content_length: int = 600
    max_file_content_length: int = 20000

    # Retries / timeouts (seconds)
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 1.0
    llm_timeout: int = 120

    # Prompt configuration
    brief_language: str = "Traditional Chinese"

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_backend_config(self) -> List[str]:
        """Validate backend configuration, return list of warnings"""
        warnings = []

        if not self.gateway_api_key:
            warnings.append("GATEWAY_API_KEY not set (reasoning, strategy and review disabled)")

        if not self.citations_api_key:
            warnings.append("CITATIONS_API_KEY not set (section drafting disabled)")

        if not self.law_search_base_url:
            warnings.append("LAW_SEARCH_BASE_URL not set (authority search disabled)")

        return warnings

    @property
    def backends_configured(self) -> bool:
        return not self.validate_backend_config()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
