import os

def int_env(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    """
    Read an env var and convert to int, with optional range validation.
    Falls back to `default` if var is unset or its parsing fails.
    """
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except (ValueError, TypeError):
        value = int(default)

    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value
    return value

# Metadata service
METADATA_URL = os.getenv("METADATA_URL", "http://metadata.google.internal/computeMetadata/v1/")
HANG_TIMEOUT_SEC   = int_env("METADATA_HANG_TIMEOUT_SEC", 60, min_value=1)    # server-side wait_for_change
CLIENT_TIMEOUT_SEC = int_env("METADATA_CLIENT_TIMEOUT_SEC", 70, min_value=1)  # whole request, hang included

# Watch loop
WATCH_RETRY_MS = int_env("WATCH_RETRY_MS", 5000, min_value=0)

