"""
Configuration module for chaintoken.

Evaluation limits and logging settings, read from environment variables
at import time.
"""

import os
from typing import Dict, Any

# ============================================================
# Evaluation limits
# ============================================================

# Defaults for RunLimits when an Authorizer is created without limits
MAX_FACTS = int(os.getenv("CHAINTOKEN_MAX_FACTS", "1000"))
MAX_ITERATIONS = int(os.getenv("CHAINTOKEN_MAX_ITERATIONS", "100"))
MAX_TIME_MS = int(os.getenv("CHAINTOKEN_MAX_TIME_MS", "1000"))


# ============================================================
# Logging
# ============================================================

LOG_LEVEL = os.getenv("CHAINTOKEN_LOG_LEVEL", "WARNING")
LOG_JSON = os.getenv("CHAINTOKEN_LOG_JSON", "").lower() in ("1", "true", "yes")


def limits_from_env() -> Dict[str, Any]:
    """Current limit defaults, re-read from the environment."""
    return {
        "max_facts": int(os.getenv("CHAINTOKEN_MAX_FACTS", str(MAX_FACTS))),
        "max_iterations": int(os.getenv("CHAINTOKEN_MAX_ITERATIONS", str(MAX_ITERATIONS))),
        "max_time_ms": int(os.getenv("CHAINTOKEN_MAX_TIME_MS", str(MAX_TIME_MS))),
    }


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("CHAINTOKEN_DEBUG", "").lower() in ("1", "true", "yes")
