"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the code
generation backend. All settings can be overridden via environment variables
or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        code_agent_model: Model driving the code agent's tool-calling turns.
        framework_selector_model: Model used for one-shot framework classification.
        title_model: Model used for fragment title and response generation.
        llm_fallback_model: Optional model tried once when the primary fails.
        llm_max_retries: Retries on transient LLM errors before falling back.
        llm_request_timeout_seconds: Timeout for a single LLM API call.
        use_mock_llm: If True, tests and demos run without provider calls.
        network_max_iterations: Hard ceiling on agent turns for a run.
        fix_network_max_iterations: Hard ceiling on agent turns for a fix.
        summary_retry_cap: Missing-summary re-prompts allowed during a run.
        fix_summary_retry_cap: Missing-summary re-prompts allowed during a fix.
        auto_fix_max_attempts: Maximum repair passes after validation.
        tool_timeout_seconds: Timeout for terminal tool commands.
        file_read_timeout_seconds: Timeout for each file read in a batch.
        lint_command: Static analysis command run by the validation pipeline.
        build_command: Build command run by the validation pipeline.
        lint_timeout_seconds: Timeout for the lint check.
        build_timeout_seconds: Timeout for the build check.
        sandbox_image_prefix: Prefix prepended to template names to form images.
        sandbox_workspace: Working directory inside sandbox containers.
        sandbox_user: Unix user that runs commands inside sandboxes.
        sandbox_public_host: Host name used when building sandbox URLs.
        sandbox_url_scheme: Scheme used when building sandbox URLs.
        max_concurrent_sandboxes: Upper bound on sandboxes in use by runs.
        sandbox_create_attempts: Attempts for transient creation failures.
        sandbox_idle_timeout_seconds: Idle time after which a released sandbox
            is paused.
        sandbox_paused_max_age_days: Age after which paused sandboxes are killed.
        sandbox_cleanup_interval_minutes: Interval of the cleanup sweep.
        url_fetch_timeout_seconds: Per-URL timeout for context fetches.
        max_context_urls: Maximum URLs fetched from a single request.
        previous_messages_context: Prior project messages sent to the agent.
        run_retention_seconds: How long finished background runs stay queryable.
        max_file_count: Maximum sandbox files collected during aggregation.
        max_file_size_bytes: Files larger than this are skipped.
        max_merged_size_bytes: Merged file maps above this size are rejected.
        database_path: SQLite file for projects, messages and fragments.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., openai/, anthropic/)
    code_agent_model: str = "openai/gpt-4.1"
    framework_selector_model: str = "openai/gpt-4.1-mini"
    title_model: str = "openai/gpt-4.1-mini"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    use_mock_llm: bool = False

    # Agent Limits
    network_max_iterations: int = 8
    fix_network_max_iterations: int = 10
    summary_retry_cap: int = 2
    fix_summary_retry_cap: int = 3
    auto_fix_max_attempts: int = 2
    tool_timeout_seconds: int = 60
    file_read_timeout_seconds: float = 3.0

    # Validation
    lint_command: str = "npm run lint"
    build_command: str = "npm run build"
    lint_timeout_seconds: int = 60
    build_timeout_seconds: int = 120

    # Sandbox Configuration
    sandbox_image_prefix: str = ""
    sandbox_workspace: str = "/home/user"
    sandbox_user: str = "user"
    sandbox_public_host: str = "localhost"
    sandbox_url_scheme: str = "http"
    max_concurrent_sandboxes: int = 10
    sandbox_create_attempts: int = 3
    sandbox_idle_timeout_seconds: float = 900.0
    sandbox_paused_max_age_days: int = 30
    sandbox_cleanup_interval_minutes: int = 1440

    # Context sources
    url_fetch_timeout_seconds: float = 10.0
    max_context_urls: int = 2
    previous_messages_context: int = 3
    run_retention_seconds: int = 3600

    # File limits
    max_file_count: int = 500
    max_file_size_bytes: int = 10 * 1024 * 1024
    max_merged_size_bytes: int = 5 * 1024 * 1024

    # Database Configuration
    database_path: str = "./data/codegen.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = Settings()

configure_logging(settings.log_level, settings.log_format)
