import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool_env(name: str, default: bool = False) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    LOG_LEVEL = _get_env_var("LOG_LEVEL", "INFO")

    # Supabase Configuration
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")

    # Redis Configuration (rate limiter backend, optional)
    REDIS_URL = _get_env_var("REDIS_URL")
    REDIS_ENABLED = _get_bool_env("REDIS_ENABLED", default=False)

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_PRICE_TIER1 = _get_env_var("STRIPE_PRICE_TIER1")
    STRIPE_PRICE_TIER2 = _get_env_var("STRIPE_PRICE_TIER2")

    # Shared secrets for machine-to-machine endpoints
    CRON_SECRET = _get_env_var("CRON_SECRET")
    INTERNAL_API_KEY = _get_env_var("INTERNAL_API_KEY")
    UNSUBSCRIBE_SECRET = _get_env_var("UNSUBSCRIBE_SECRET")

    # Frontend / email
    FRONTEND_URL = _get_env_var("FRONTEND_URL", "https://palette.app")
    RESEND_API_KEY = _get_env_var("RESEND_API_KEY")
    EMAIL_FROM = _get_env_var("EMAIL_FROM", "Palette <hello@palette.app>")

    # Image generation backend
    GENERATION_SERVICE_URL = _get_env_var("GENERATION_SERVICE_URL")
    GENERATION_SERVICE_KEY = _get_env_var("GENERATION_SERVICE_KEY")
    GENERATION_TIMEOUT_SECONDS = float(_get_env_var("GENERATION_TIMEOUT_SECONDS", "120"))

    # Error monitoring
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", default=bool(SENTRY_DSN))
    SENTRY_TRACES_SAMPLE_RATE = float(_get_env_var("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key"
            )

        return True
