"""Engine configuration — all settings from environment (ORRERY_* variables)."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MERGE_STRATEGIES = ("prepend", "append", "interleave")
HOOK_FAILURE_POLICIES = ("raise", "log")


class EngineConfig(BaseSettings):
    """Runtime configuration for the orrery engine (validated via Pydantic)."""

    model_config = SettingsConfigDict(env_prefix="ORRERY_", extra="ignore", populate_by_name=True)

    # LLM
    default_model: str = "gpt-4o-mini"
    default_temperature: float = 0.7
    default_max_tokens: int = 4096
    llm_timeout_seconds: float = 120.0
    litellm_api_key: str = Field(default="", alias="LITELLM_API_KEY")
    litellm_api_base: str = Field(default="", alias="LITELLM_API_BASE")

    # Circuit breaker (LLM backend)
    circuit_threshold: int = 5
    circuit_reset_after: float = 30.0

    # Step loop
    default_step_budget: int = 10
    steps_per_sub_agent: int = 10

    # Tools
    tool_timeout_seconds: float = 300.0

    # Delegation
    max_delegation_depth: int = 8
    include_supervisor_memory: bool = True
    supervisor_memory_messages: int = 10

    # Hooks
    hook_failure_policy: str = "raise"

    # Memory
    history_limit: int = 10
    storage_limit: int = 100
    semantic_limit: int = 5
    semantic_threshold: float = 0.7
    semantic_merge_strategy: str = "append"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("default_temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"Temperature must be 0.0-2.0, got {v}")
        return v

    @field_validator("default_max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v < 1 or v > 200000:
            raise ValueError(f"max_tokens must be 1-200000, got {v}")
        return v

    @field_validator("default_step_budget", "steps_per_sub_agent", "max_delegation_depth")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("storage_limit", "history_limit", "semantic_limit")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("semantic_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not -1.0 <= v <= 1.0:
            raise ValueError(f"semantic_threshold must be -1.0-1.0, got {v}")
        return v

    @field_validator("semantic_merge_strategy")
    @classmethod
    def validate_merge_strategy(cls, v: str) -> str:
        if v not in MERGE_STRATEGIES:
            raise ValueError(f"semantic_merge_strategy must be one of {MERGE_STRATEGIES}, got {v!r}")
        return v

    @field_validator("hook_failure_policy")
    @classmethod
    def validate_hook_policy(cls, v: str) -> str:
        if v not in HOOK_FAILURE_POLICIES:
            raise ValueError(f"hook_failure_policy must be one of {HOOK_FAILURE_POLICIES}, got {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables."""
        return cls()
