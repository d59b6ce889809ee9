import logging
import sys
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("brick_store_connector")

_SENSITIVE_KEYS = {
    "authorization",
    "key",
    "api_key",
    "consumer_key",
    "consumer_secret",
    "token_value",
    "token_secret",
    "oauth_signature",
    "password",
}


def sanitize_credentials(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a shallow copy of ``data`` with secret-looking values redacted.

    Used before headers, query strings or form bodies of marketplace calls
    end up in log lines. Nested dicts are sanitized recursively.
    """
    if not data:
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if str(key).lower() in _SENSITIVE_KEYS:
            sanitized[key] = "***"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_credentials(value)
        else:
            sanitized[key] = value
    return sanitized
