"""
Configuration management using pydantic-settings.
Reads from .env file and environment variables.

`Settings` is process configuration. `AnalysisConfig` is the immutable per-run
snapshot handed to the orchestrator, so a settings change never leaks into a
run that is already in flight.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration"""

    # Completion provider
    completion_provider: Literal["gemini", "groq"] = "gemini"

    google_api_key: str = "test-key-configure-in-env"
    gemini_endpoint: str = "https://generativelanguage.googleapis.com/v1beta/models"
    gemini_model: str = "gemini-2.0-flash"

    groq_api_key: str = "test-key-configure-in-env"
    groq_model: str = "llama-3.3-70b-versatile"

    # two_phase: phase 1 breakdown, then phase 2 structuring
    # single_call: raw message straight to phase 2
    analysis_mode: Literal["two_phase", "single_call"] = "two_phase"

    # Generation parameters per phase
    analysis_temperature: float = 0.4
    analysis_max_output_tokens: int = 4096
    analysis_top_p: float = 0.9
    analysis_timeout_ms: int = 60_000

    structure_temperature: float = 0.1
    structure_max_output_tokens: int = 4096
    structure_top_p: float = 0.9
    structure_timeout_ms: int = 30_000

    repair_temperature: float = 0.0
    repair_max_output_tokens: int = 4096
    repair_top_p: float = 1.0
    repair_timeout_ms: int = 30_000

    # User prompt overrides (empty = built-in template)
    prompt_phase1: Optional[str] = None
    prompt_phase2: Optional[str] = None
    prompt_phase3: Optional[str] = None
    prompt_single_call: Optional[str] = None

    # Catalog store
    catalog_db_path: str = "data/catalog.db"

    # Progress simulation
    progress_tick_seconds: float = 0.8

    # Finished runs are dropped from the registry after this many minutes
    run_retention_minutes: int = 15

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


class PhaseParameters(BaseModel):
    """Generation parameters for one phase"""
    model_config = ConfigDict(frozen=True)

    temperature: float
    max_output_tokens: int
    top_p: float
    timeout_ms: int


class AnalysisConfig(BaseModel):
    """
    Per-run analysis configuration.

    Built once at run start and never mutated, so two runs started with
    different prompt or model selections stay independent.
    """
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    mode: Literal["two_phase", "single_call"] = "two_phase"
    phase1_template: str
    phase2_template: str
    phase3_template: str
    single_call_template: str
    phase1: PhaseParameters
    phase2: PhaseParameters
    phase3: PhaseParameters

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "AnalysisConfig":
        """Snapshot the current settings into a run configuration."""
        from magic_order.prompts import (
            STEP_ONE_PROMPT,
            STEP_TWO_PROMPT,
            STEP_THREE_PROMPT,
            SINGLE_CALL_PROMPT,
            choose_template,
        )

        s = source or settings
        model = s.gemini_model if s.completion_provider == "gemini" else s.groq_model

        return cls(
            provider=s.completion_provider,
            model=model,
            mode=s.analysis_mode,
            phase1_template=choose_template(s.prompt_phase1, STEP_ONE_PROMPT),
            phase2_template=choose_template(s.prompt_phase2, STEP_TWO_PROMPT),
            phase3_template=choose_template(s.prompt_phase3, STEP_THREE_PROMPT),
            single_call_template=choose_template(s.prompt_single_call, SINGLE_CALL_PROMPT),
            phase1=PhaseParameters(
                temperature=s.analysis_temperature,
                max_output_tokens=s.analysis_max_output_tokens,
                top_p=s.analysis_top_p,
                timeout_ms=s.analysis_timeout_ms,
            ),
            phase2=PhaseParameters(
                temperature=s.structure_temperature,
                max_output_tokens=s.structure_max_output_tokens,
                top_p=s.structure_top_p,
                timeout_ms=s.structure_timeout_ms,
            ),
            phase3=PhaseParameters(
                temperature=s.repair_temperature,
                max_output_tokens=s.repair_max_output_tokens,
                top_p=s.repair_top_p,
                timeout_ms=s.repair_timeout_ms,
            ),
        )


# Global settings instance
settings = Settings()
