"""
Configuration loading and validation for the Azure Ops Copilot API
Reads every setting from the environment once at startup
"""
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Tuple


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration"""

    # Azure management (cloud data service)
    azure_subscription_id: str = ""
    azure_tenant_id: str = ""
    azure_client_id: str = ""
    azure_client_secret: str = ""

    # Completion service
    completion_backend: str = "azure"
    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3"
    completion_temperature: float = 0.7
    completion_max_tokens: int = 1000
    redact_sensitive: bool = True

    # Result cache / metrics store
    cache_max_size: int = 500
    cache_ttl: float = 300.0
    metrics_max_size: int = 1000
    metrics_ttl: float = 3600.0

    # Circuit breakers
    azure_breaker_failures: int = 5
    azure_breaker_reset: float = 30.0
    completion_breaker_failures: int = 3
    completion_breaker_reset: float = 15.0
    breaker_success_threshold: int = 2

    # Retry / timeouts / admission
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 1000
    data_fetch_timeout: float = 15.0
    query_rate_limit: str = "100/15 minutes"

    # Logging / HTTP
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: str = ""
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])


def load_settings() -> Settings:
    """Build Settings from environment variables (call after load_dotenv)"""
    origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")]
    return Settings(
        azure_subscription_id=os.getenv("AZURE_SUBSCRIPTION_ID", ""),
        azure_tenant_id=os.getenv("AZURE_TENANT_ID", ""),
        azure_client_id=os.getenv("AZURE_CLIENT_ID", ""),
        azure_client_secret=os.getenv("AZURE_CLIENT_SECRET", ""),
        completion_backend=os.getenv("COMPLETION_BACKEND", "azure").strip().lower(),
        azure_openai_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT", ""),
        azure_openai_api_key=os.getenv("AZURE_OPENAI_API_KEY", ""),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        ollama_url=os.getenv("OLLAMA_URL", "http://localhost:11434"),
        ollama_model=os.getenv("OLLAMA_MODEL", "llama3"),
        completion_temperature=float(os.getenv("COMPLETION_TEMPERATURE", "0.7")),
        completion_max_tokens=int(os.getenv("COMPLETION_MAX_TOKENS", "1000")),
        redact_sensitive=_env_bool("COPILOT_REDACT_SENSITIVE", "true"),
        cache_max_size=int(os.getenv("CACHE_MAX_SIZE", "500")),
        cache_ttl=float(os.getenv("CACHE_TTL_SECONDS", "300")),
        metrics_max_size=int(os.getenv("METRICS_MAX_SIZE", "1000")),
        metrics_ttl=float(os.getenv("METRICS_TTL_SECONDS", "3600")),
        azure_breaker_failures=int(os.getenv("AZURE_BREAKER_FAILURES", "5")),
        azure_breaker_reset=float(os.getenv("AZURE_BREAKER_RESET_SECONDS", "30")),
        completion_breaker_failures=int(os.getenv("COMPLETION_BREAKER_FAILURES", "3")),
        completion_breaker_reset=float(os.getenv("COMPLETION_BREAKER_RESET_SECONDS", "15")),
        breaker_success_threshold=int(os.getenv("BREAKER_SUCCESS_THRESHOLD", "2")),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
        retry_initial_delay_ms=int(os.getenv("RETRY_INITIAL_DELAY_MS", "1000")),
        data_fetch_timeout=float(os.getenv("DATA_FETCH_TIMEOUT_SECONDS", "15")),
        query_rate_limit=os.getenv("QUERY_RATE_LIMIT", "100/15 minutes"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        json_logs=_env_bool("JSON_LOGS", "false"),
        log_file=os.getenv("LOG_FILE", ""),
        allowed_origins=[o for o in origins if o],
    )


class ConfigValidator:
    """Validates environment configuration on startup"""

    # Required for live cloud data
    REQUIRED_VARS = {
        "AZURE_SUBSCRIPTION_ID": "Azure subscription to query",
        "AZURE_TENANT_ID": "Azure AD tenant of the service principal",
        "AZURE_CLIENT_ID": "Service principal application id",
        "AZURE_CLIENT_SECRET": "Service principal secret",
    }

    # Required only for the selected completion backend
    BACKEND_VARS = {
        "azure": {
            "AZURE_OPENAI_ENDPOINT": "Azure OpenAI chat-completions deployment URL",
            "AZURE_OPENAI_API_KEY": "Azure OpenAI API key",
        },
        "openai": {
            "OPENAI_API_KEY": "OpenAI API key",
        },
        "ollama": {},
    }

    # Optional with defaults
    OPTIONAL_VARS = {
        "CACHE_MAX_SIZE": ("500", "Result cache capacity"),
        "CACHE_TTL_SECONDS": ("300", "Result cache time-to-live"),
        "RETRY_MAX_ATTEMPTS": ("3", "Completion attempts on rate limiting"),
        "DATA_FETCH_TIMEOUT_SECONDS": ("15", "Ceiling for the cloud data fetch"),
        "QUERY_RATE_LIMIT": ("100/15 minutes", "Admission limit per client IP"),
    }

    POSITIVE_INT_VARS = [
        "CACHE_MAX_SIZE", "METRICS_MAX_SIZE", "AZURE_BREAKER_FAILURES",
        "COMPLETION_BREAKER_FAILURES", "BREAKER_SUCCESS_THRESHOLD",
        "RETRY_MAX_ATTEMPTS", "RETRY_INITIAL_DELAY_MS", "COMPLETION_MAX_TOKENS",
    ]
    POSITIVE_FLOAT_VARS = [
        "CACHE_TTL_SECONDS", "METRICS_TTL_SECONDS", "AZURE_BREAKER_RESET_SECONDS",
        "COMPLETION_BREAKER_RESET_SECONDS", "DATA_FETCH_TIMEOUT_SECONDS",
    ]

    @classmethod
    def validate(cls) -> Tuple[bool, List[str], List[str]]:
        """
        Validate configuration
        Returns: (is_valid, errors, warnings)
        """
        errors = []
        warnings = []

        for var, description in cls.REQUIRED_VARS.items():
            value = os.getenv(var)
            if not value or value.strip() == "":
                errors.append(f"Missing required env var: {var} ({description})")

        backend = os.getenv("COMPLETION_BACKEND", "azure").strip().lower()
        if backend not in cls.BACKEND_VARS:
            errors.append(f"COMPLETION_BACKEND must be one of {', '.join(cls.BACKEND_VARS)}: {backend}")
        else:
            for var, description in cls.BACKEND_VARS[backend].items():
                value = os.getenv(var)
                if not value or value.strip() == "":
                    errors.append(f"Missing required env var for '{backend}' backend: {var} ({description})")

        for var, (default, description) in cls.OPTIONAL_VARS.items():
            value = os.getenv(var)
            if not value or value.strip() == "":
                warnings.append(f"Using default for {var}={default} ({description})")

        errors.extend(cls._validate_values())

        is_valid = len(errors) == 0
        return is_valid, errors, warnings

    @classmethod
    def _validate_values(cls) -> List[str]:
        """Validate specific configuration values"""
        errors = []

        for var in cls.POSITIVE_INT_VARS:
            raw = os.getenv(var)
            if raw is None:
                continue
            try:
                if int(raw) < 1:
                    errors.append(f"{var} must be positive: {raw}")
            except ValueError:
                errors.append(f"{var} must be a number: {raw}")

        for var in cls.POSITIVE_FLOAT_VARS:
            raw = os.getenv(var)
            if raw is None:
                continue
            try:
                if float(raw) <= 0:
                    errors.append(f"{var} must be positive: {raw}")
            except ValueError:
                errors.append(f"{var} must be a number: {raw}")

        for var in ("AZURE_OPENAI_ENDPOINT", "OLLAMA_URL"):
            url = os.getenv(var, "")
            if url and not (url.startswith("http://") or url.startswith("https://")):
                errors.append(f"{var} must start with http:// or https://")

        return errors

    @classmethod
    def print_validation_results(cls, is_valid: bool, errors: List[str], warnings: List[str]):
        """Print validation results"""
        print("\n" + "=" * 70)
        print("Configuration Validation Results")
        print("=" * 70)

        if warnings:
            print("\n⚠️  WARNINGS:")
            for warning in warnings:
                print(f"  - {warning}")

        if errors:
            print("\n❌ ERRORS:")
            for error in errors:
                print(f"  - {error}")
            print("\n" + "=" * 70)
            print("❌ Configuration validation FAILED")
            print("=" * 70 + "\n")
        else:
            print("\n✅ Configuration validation PASSED")
            print("=" * 70 + "\n")

        return is_valid

    @classmethod
    def validate_and_exit_on_error(cls):
        """Validate configuration and exit if errors found"""
        is_valid, errors, warnings = cls.validate()
        cls.print_validation_results(is_valid, errors, warnings)

        if not is_valid:
            print("Fix configuration errors before starting the service.", file=sys.stderr)
            sys.exit(1)


def describe(settings: Settings) -> Dict[str, object]:
    """Non-secret view of the settings for the health endpoint"""
    return {
        "completion_backend": settings.completion_backend,
        "cache": {"max_size": settings.cache_max_size, "ttl": settings.cache_ttl},
        "retry": {
            "max_attempts": settings.retry_max_attempts,
            "initial_delay_ms": settings.retry_initial_delay_ms,
        },
        "data_fetch_timeout": settings.data_fetch_timeout,
        "query_rate_limit": settings.query_rate_limit,
    }
