"""Base HTTP Client for Ops Queue API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class OpsQueueClientError(Exception):
    """Raised for connection failures and non-ok API responses"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(data: Any, default: str) -> str:
    """Pull the message out of an error envelope"""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if "detail" in data:
            return str(data["detail"])
    return default


class APIClient:
    """
    Thin httpx wrapper around the /v1 API.

    Every call goes through `_request`, which unwraps the `{ok, data}`
    envelope and turns transport and API failures into OpsQueueClientError.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 30,
        headers: dict[str, str] | None = None,
        bearer_token: str | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        default_headers = dict(headers or {})
        if bearer_token:
            default_headers["Authorization"] = f"Bearer {bearer_token}"
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=default_headers
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except ValueError:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise OpsQueueClientError(
                f"Invalid JSON response: {response.status_code}", response.status_code
            ) from None

        if response.is_error:
            error_msg = _error_message(data, "Unknown error")
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise OpsQueueClientError(
                f"API Error {response.status_code}: {error_msg}", response.status_code
            )

        if isinstance(data, dict) and "ok" in data:
            if not data["ok"]:
                error_msg = _error_message(data, "Request failed")
                console.print(Panel(f"[red]{error_msg}[/red]", title="Request Failed"))
                raise OpsQueueClientError(error_msg, response.status_code)
            return data.get("data", {})

        return data

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        # An explicit timeout=None would disable the client default in httpx
        if kwargs.get("timeout") is None:
            kwargs.pop("timeout", None)
        try:
            response = self.client.request(method, f"/v1{path}", **kwargs)
        except httpx.TimeoutException as e:
            console.print(f"[red]Request timed out: {e}[/red]")
            raise OpsQueueClientError(f"Request timed out: {e}") from None
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise OpsQueueClientError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make GET request"""
        return self._request("GET", path, params=params)

    def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make POST request"""
        return self._request("POST", path, json=json, params=params, timeout=timeout)
