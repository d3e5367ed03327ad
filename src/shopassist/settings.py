from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    cors_origins: str = "*"

    redis_url: str | None = None
    context_ttl_seconds: int = 86400  # 24 hours

    # Comma-separated credential pools, one per upstream service
    gemini_api_keys: str = ""
    serp_api_keys: str = ""

    grounding_enabled: bool = True
    grounding_mode: Literal["conservative", "balanced", "aggressive"] = "balanced"

    max_iterations: int = 6
    context_stale_seconds: int = 300

    relevance_threshold_exact: float = 0.7
    relevance_threshold_parameters: float = 0.5
    relevance_threshold_category: float = 0.3
    max_products_exact: int = 3
    max_products_parameters: int = 6
    max_products_category: int = 8

    prompt_id: str = "UniversalPrompt v1.0.1"
    universal_prompt: str = (
        "You are a shopping assistant helping a customer in {fe_location}.\n"
        "Always answer in {fe_language} and quote prices in {fe_currency}.\n\n"
        "Work in cycles of at most six turns. Ask one clarifying question at a "
        "time until the product is defined, then request a search.\n\n"
        "Reply with JSON only, either\n"
        '{"response_type":"dialogue","output":"...","quick_replies":[...],"category":"..."}\n'
        "or\n"
        '{"response_type":"search","search_phrase":"...","search_type":"exact|parameters|category","category":"..."}'
    )
    mini_kernel: str = (
        "RULES: location={fe_location}; language={fe_language}; "
        "currency={fe_currency}.\n"
        "STATE: cycle {cycle_id}, iteration {iteration}, category {category}.\n"
        "Respond with a single JSON object."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )

    def search_policies(self) -> dict[str, tuple[float, int]]:
        """Return the (threshold, max_results) table keyed by search type."""
        return {
            "exact": (self.relevance_threshold_exact, self.max_products_exact),
            "parameters": (
                self.relevance_threshold_parameters,
                self.max_products_parameters,
            ),
            "category": (self.relevance_threshold_category, self.max_products_category),
        }


def split_keys(raw: str) -> list[str]:
    """Parse a comma-separated key list, dropping blanks."""
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
