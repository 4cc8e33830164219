"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Heuristic thresholds default to the values the pipeline contract
    depends on; override them only for experiments.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Clinical Timeline Engine"
    debug: bool = False
    log_level: str = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Extraction
    negation_threshold: float = 0.7
    negation_window_tokens: int = 6
    untargeted_confidence_multiplier: float = 0.85

    # Deduplication / linking
    merge_threshold: float = 0.75
    link_threshold: float = 0.5

    # Timeline heuristics
    trigger_window_hours: int = 48
    leads_to_window_days: int = 14
    response_window_days: int = 21
    prevention_window_days: int = 21

    # Treatment response
    response_lookahead_days: int = 14


settings = Settings()
