from __future__ import annotations

import json
from typing import Any

import httpx

from pulse.core.logging import get_logger

EVENTS_PATH = "/events"
RECORDINGS_PATH = "/recordings"
ASSIGN_PATH = "/sdk/assign"
TRACK_PATH = "/sdk/track"
CONFIG_PATH = "/sdk/config"

BEACON_TIMEOUT_S = 2.0


class DeliveryError(Exception):
    """
    A request did not produce a usable 2xx JSON body.
    Network errors, non-2xx status and malformed bodies all end up here.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CollectorTransport:
    """
    HTTP client for the collector API. Owns an httpx.Client unless one is injected.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_s: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("API key is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=self.timeout_s)
        self._logger = get_logger(__name__)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-api-key": self.api_key}

    def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(
                self.url(path),
                content=json.dumps(body, separators=(",", ":")),
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        return _parse_response(response)

    def get_json(self, path: str) -> dict[str, Any]:
        try:
            response = self._client.get(
                self.url(path),
                headers={"x-api-key": self.api_key},
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        return _parse_response(response)

    def send_beacon(
        self, path: str, body: dict[str, Any], *, with_headers: bool = False
    ) -> bool:
        """
        Single fire-and-forget attempt for teardown. Never raises.

        Without headers the API key travels as the `apiKey` query parameter,
        like a browser beacon that cannot set custom headers.
        """
        try:
            if with_headers:
                response = self._client.post(
                    self.url(path),
                    content=json.dumps(body, separators=(",", ":")),
                    headers=self._headers(),
                    timeout=BEACON_TIMEOUT_S,
                )
            else:
                response = self._client.post(
                    self.url(path),
                    params={"apiKey": self.api_key},
                    content=json.dumps(body, separators=(",", ":")),
                    headers={"Content-Type": "application/json"},
                    timeout=BEACON_TIMEOUT_S,
                )
        except httpx.HTTPError as exc:
            self._logger.debug("beacon_failed", extra={"reason": path, "error": str(exc)})
            return False
        return response.is_success

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def _parse_response(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        data = None

    if not response.is_success:
        detail = data.get("error") if isinstance(data, dict) else None
        raise DeliveryError(
            f"HTTP {response.status_code}: {detail or response.reason_phrase}",
            status_code=response.status_code,
        )

    if not isinstance(data, dict):
        raise DeliveryError("Malformed response body", status_code=response.status_code)
    return data
