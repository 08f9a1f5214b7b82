import logging
import threading
import time

from palette.config.config import Config
from supabase import Client, create_client
from supabase.client import ClientOptions

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_client_lock = threading.Lock()
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds


def get_supabase_client() -> Client:
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    with _client_lock:
        if _supabase_client is not None:
            return _supabase_client

        # Don't hammer a broken backend: wait for the error cache to expire
        if _last_error is not None:
            time_since_error = time.time() - _last_error_time
            if time_since_error < ERROR_CACHE_TTL:
                retry_in = int(ERROR_CACHE_TTL - time_since_error)
                raise RuntimeError(
                    f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
                ) from _last_error
            logger.info("Error cache expired, retrying Supabase initialization...")
            _last_error = None
            _last_error_time = 0

        try:
            Config.validate()

            if not Config.SUPABASE_URL.startswith(("http://", "https://")):
                raise RuntimeError(
                    f"SUPABASE_URL must start with 'http://' or 'https://'. "
                    f"Current value: '{Config.SUPABASE_URL}'"
                )

            masked_url = (
                Config.SUPABASE_URL[:30] + "..."
                if len(Config.SUPABASE_URL) > 30
                else Config.SUPABASE_URL
            )
            logger.info(f"Initializing Supabase client with URL: {masked_url}")

            _supabase_client = create_client(
                supabase_url=Config.SUPABASE_URL,
                supabase_key=Config.SUPABASE_KEY,
                options=ClientOptions(
                    postgrest_client_timeout=30,
                    schema="public",
                    headers={"X-Client-Info": "palette-backend/1.0"},
                ),
            )
            return _supabase_client

        except Exception as e:
            _last_error = e
            _last_error_time = time.time()

            logger.error(
                f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
                exc_info=True,
            )

            try:
                import sentry_sdk

                with sentry_sdk.push_scope() as scope:
                    scope.set_context(
                        "supabase_config",
                        {
                            "supabase_url_set": bool(Config.SUPABASE_URL),
                            "supabase_key_set": bool(Config.SUPABASE_KEY),
                            "error_type": type(e).__name__,
                        },
                    )
                    scope.set_tag("component", "supabase_client")
                    sentry_sdk.capture_exception(e)
            except Exception as sentry_error:
                logger.warning(f"Failed to capture error to Sentry: {sentry_error}")

            raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def reset_supabase_client() -> None:
    """Drop the cached client so the next call builds a fresh connection."""
    global _supabase_client, _last_error, _last_error_time

    with _client_lock:
        _supabase_client = None
        _last_error = None
        _last_error_time = 0
    logger.info("Supabase client reset")


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check whether an error comes from a stale HTTP/2 connection.

    Returns:
        bool: True if this is an HTTP/2 protocol error requiring reset
    """
    error_str = str(error).lower()
    error_type = type(error).__name__

    if "protocolerror" in error_type.lower():
        return True

    http2_error_indicators = [
        "connectionstate.closed",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
        "http2 error",
    ]
    if any(indicator in error_str for indicator in http2_error_indicators):
        return True

    if "connection closed" in error_str and ("http2" in error_str or "h2" in error_str):
        return True

    return False


def execute_with_retry(operation, max_retries: int = 2, operation_name: str = "database operation"):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: A callable that performs the database operation.
                   It should accept a Supabase client as its first argument.
        max_retries: Maximum number of retry attempts (default: 2)
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Example:
        def load_user(client):
            return client.table("users").select("*").eq("external_id", uid).execute()

        result = execute_with_retry(load_user, operation_name="load_user")
    """
    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            if not is_http2_protocol_error(e):
                raise
            if attempt >= max_retries:
                logger.error(
                    f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
                )
                raise
            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
            )
            reset_supabase_client()
            time.sleep(0.1)

    raise RuntimeError(f"{operation_name} failed with no error captured")


def is_unique_violation(error: Exception) -> bool:
    """True for a Postgres unique_violation (SQLSTATE 23505) surfaced by PostgREST."""
    return getattr(error, "code", None) == "23505"
