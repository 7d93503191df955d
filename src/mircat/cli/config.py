"""
CLI configuration.

Module-level settings read by every command; environment variables provide
the defaults and the global options of ``mircat`` override them.
"""

import os

# Control API the status/events commands talk to
API_HOST: str = os.environ.get("MIRCAT_API_HOST", "127.0.0.1")
API_PORT: int = int(os.environ.get("MIRCAT_API_PORT", "8090"))

# Relay config file; empty means ./config.json
CONFIG_PATH: str = os.environ.get("MIRCAT_CONFIG", "")

# Output format for show/status commands: table|json|yaml
OUTPUT_FORMAT: str = "table"

# HTTP timeout for control API requests
REQUEST_TIMEOUT: float = 10.0


def api_url(path: str = "") -> str:
    return f"http://{API_HOST}:{API_PORT}{path}"


def ws_url(path: str = "") -> str:
    return f"ws://{API_HOST}:{API_PORT}{path}"
