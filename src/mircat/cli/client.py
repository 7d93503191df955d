"""
Control API client for CLI commands.

Returns parsed JSON instead of printing.
"""

import httpx

from mircat.cli import config as cli_config
from mircat.utils.logger import get_logger

logger = get_logger(__name__)


class APIError(Exception):
    """API request error with status code and detail."""

    def __init__(
        self, message: str, status_code: int | None = None, detail: str | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def _request(method: str, path: str, **kwargs) -> dict:
    url = cli_config.api_url(path)
    try:
        response = httpx.request(
            method, url, timeout=cli_config.REQUEST_TIMEOUT, **kwargs
        )
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        logger.debug(f"HTTP {status} on {method} {path}: {detail}")
        raise APIError(f"HTTP {status}: {detail}", status_code=status, detail=detail)
    except httpx.RequestError as e:
        raise APIError(f"Cannot reach control API at {url}: {e}") from e


def get_status() -> dict:
    return _request("GET", "/api/status")


def get_events(limit: int = 50) -> list[dict]:
    return _request("GET", "/api/events", params={"limit": limit})["events"]


def stop_relay() -> dict:
    return _request("POST", "/api/stop")
