import logging
import os
from typing import Any, Optional

import httpx
from fastapi import Depends

from fitcoach.api.auth import oauth2_scheme

logger = logging.getLogger("uvicorn.error")

ENDPOINT_BASE_URL = os.getenv("ENDPOINT_BASE_URL", "http://127.0.0.1:8000")
ENDPOINT_TIMEOUT_SECONDS = float(os.getenv("ENDPOINT_TIMEOUT_SECONDS", "120"))
ENDPOINT_CONNECT_TIMEOUT_SECONDS = float(os.getenv("ENDPOINT_CONNECT_TIMEOUT_SECONDS", "5"))


def endpoint_timeout() -> httpx.Timeout:
    return httpx.Timeout(ENDPOINT_TIMEOUT_SECONDS, connect=ENDPOINT_CONNECT_TIMEOUT_SECONDS)


class EndpointCallError(RuntimeError):
    def __init__(self, path: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.status_code = status_code


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, list) and value and isinstance(value[0], dict) and value[0].get("msg"):
                return str(value[0]["msg"])
    return f"Request failed with status {response.status_code}"


class EndpointClient:
    """Calls the service's own collaborator endpoints on behalf of one user."""

    def __init__(self, http: httpx.Client, token: str):
        self.http = http
        self.token = token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _handle(self, path: str, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "endpoint_call_failed path=%s status=%s detail=%s", path, response.status_code, message
            )
            raise EndpointCallError(path, message, status_code=response.status_code)
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.http.post(path, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            raise EndpointCallError(path, f"Request to {path} failed: {type(exc).__name__}") from exc
        return self._handle(path, response)

    def get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            response = self.http.get(path, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            raise EndpointCallError(path, f"Request to {path} failed: {type(exc).__name__}") from exc
        return self._handle(path, response)


def open_endpoint_client(token: str, base_url: Optional[str] = None) -> EndpointClient:
    http = httpx.Client(base_url=base_url or ENDPOINT_BASE_URL, timeout=endpoint_timeout())
    return EndpointClient(http=http, token=token)


def get_endpoint_client(token: str = Depends(oauth2_scheme)):
    client = open_endpoint_client(token)
    try:
        yield client
    finally:
        client.http.close()
