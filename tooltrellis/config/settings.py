"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """Completion backend configuration."""

    model: str = Field(
        default="openai/gpt-4o-mini",
        description="LiteLLM model string, e.g. 'openai/gpt-4o', 'anthropic/claude-sonnet-4-5'. "
                    "The provider prefix tells LiteLLM which API to route the request to.",
    )
    max_tokens: int = Field(default=1200, description="Maximum tokens in a response")
    temperature: float = Field(default=0.7, description="Sampling temperature for tool-enabled calls")
    synthesis_temperature: float = Field(
        default=0.5, description="Sampling temperature for the final tools-disabled call"
    )
    api_key: str = Field(default="", description="API key for the model's provider")
    api_base: str | None = Field(default=None, description="Optional base URL override")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Per-attempt call timeout")
    max_transport_retries: int = Field(
        default=3, ge=1, description="Attempts per call on timeouts, 5xx and rate limits"
    )
    retry_min_seconds: float = Field(default=1.0, ge=0, description="Backoff multiplier")
    retry_max_seconds: float = Field(default=10.0, ge=0, description="Backoff ceiling")
    responses_model_prefixes: list[str] = Field(
        default_factory=lambda: ["openai/o1", "openai/o3", "openai/o4", "openai/gpt-5"],
        description="Model-string prefixes framed with call/output item pairing "
                    "(responses API). Every other model uses role-based chat framing.",
    )

    model_config = SettingsConfigDict(env_prefix="LLM_")


class OrchestratorSettings(BaseSettings):
    """Bounds and prompts for the tool-calling state machine."""

    max_tool_rounds: int = Field(default=5, ge=1, description="Successful tool rounds per turn")
    max_retry_attempts: int = Field(
        default=3, ge=0, description="Corrective model calls per turn after retryable tool errors"
    )
    temperature_step: float = Field(
        default=0.2, ge=0, description="Temperature added per corrective attempt"
    )
    max_temperature: float = Field(default=2.0, gt=0, description="Upper bound for biased temperature")
    synthesis_guidance: str = Field(
        default=(
            "Tool use for this request is finished. Write the final answer for the user "
            "in clear prose based on the conversation so far. Do not mention internal "
            "tool names, call identifiers or retry attempts."
        ),
        description="System message appended to the synthesis call",
    )
    tools_unavailable_note: str = Field(
        default=(
            "The requested tools could not be used successfully. Explain briefly what "
            "could not be done and answer as well as possible without them."
        ),
        description="Extra guidance appended when synthesis follows retry exhaustion",
    )
    fallback_text: str = Field(
        default="Sorry, I could not generate a response.",
        description="Answer used when the final completion returns no text",
    )

    model_config = SettingsConfigDict(env_prefix="ORCHESTRATOR_")


class MCPServerSettings(BaseModel):
    """One stdio MCP server exposed as a tool connection."""

    connection_id: str = Field(description="Stable identifier used in the schema cache")
    command: str = Field(description="Executable, e.g. 'node' or 'uvx'")
    args: list[str] = Field(default_factory=list, description="Command arguments")
    env: dict[str, str] | None = Field(default=None, description="Extra environment variables")


class ToolSettings(BaseSettings):
    """External tool configuration."""

    schema_ttl_seconds: float = Field(
        default=600.0, gt=0, description="Age after which a cached tool contract is refreshed"
    )
    call_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-attempt tool call timeout")
    max_transport_retries: int = Field(
        default=3, ge=1, description="Attempts per tool call on connection failures and timeouts"
    )
    retry_min_seconds: float = Field(default=0.5, ge=0, description="Backoff multiplier")
    retry_max_seconds: float = Field(default=5.0, ge=0, description="Backoff ceiling")
    mcp_servers: list[MCPServerSettings] = Field(
        default_factory=list,
        description="Stdio MCP servers to connect. "
                    "Set via TOOLS__MCP_SERVERS='[{\"connection_id\": \"dice\", \"command\": \"node\", "
                    "\"args\": [\"index.js\"]}]'",
    )

    model_config = SettingsConfigDict(env_prefix="TOOL_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
