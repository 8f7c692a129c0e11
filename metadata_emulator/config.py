import os

from metadata_client.config import int_env

# Server bind
BIND_HOST = os.getenv("EMU_BIND_HOST", "127.0.0.1")
PORT      = int_env("EMU_PORT", 9002, min_value=1, max_value=65535)

# Long poll
MAX_HANG_SEC = int_env("EMU_MAX_HANG_SEC", 60, min_value=1)

# Fault injection
FAULT_500_PCT = int_env("EMU_FAULT_500_PCT", 0, min_value=0, max_value=100)  # clamp to [0,100]
FAULT_SLOW_MS = int_env("EMU_FAULT_SLOW_MS", 0, min_value=0)                 # no negative delays

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
