"""
Helius webhook API client.
Creates, fetches and deletes webhook subscriptions with retry on transient failures.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import Settings, get_settings
from ..errors import UpstreamFailure

logger = logging.getLogger(__name__)

# Helius requires at least one transaction type; address-only subscriptions use ANY
ANY_TRANSACTION_TYPE = "ANY"


class _TransientStatus(Exception):
    """5xx or 429 response, worth another attempt."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class HeliusClient:
    """Thin wrapper over the Helius ``/webhooks`` endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
        retry_wait=None
    ):
        """Initialize Helius client.

        Args:
            api_key: Helius API key, read from HELIUS_API_KEY when omitted
            settings: Settings instance, defaults to the global one
            transport: Optional httpx transport (used by tests)
            retry_wait: tenacity wait strategy between attempts
        """
        self.settings = settings or get_settings()
        self.config = self.settings.helius
        self.api_key = api_key or self.settings.get_helius_api_key()
        self.base_url = self.config.base_url.rstrip("/")
        self.webhook_type = self.config.webhook_type
        self.auth_header = self.config.auth_header
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Issue one API call, retrying transport errors and 5xx responses."""
        retrying = Retrying(
            stop=stop_after_attempt(max(self.config.max_retries, 1)),
            wait=self._retry_wait,
            retry=retry_if_exception_type((httpx.TransportError, _TransientStatus)),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self._client.request(method, path, params={"api-key": self.api_key}, json=json)
                    if response.status_code >= 500 or response.status_code == 429:
                        logger.warning(f"Helius {method} {path} returned {response.status_code}, retrying")
                        raise _TransientStatus(response)
                    return response
        except _TransientStatus as e:
            raise UpstreamFailure(
                f"Helius {method} {path} failed with HTTP {e.response.status_code}",
                {"status_code": e.response.status_code}
            ) from None
        except httpx.TransportError as e:
            raise UpstreamFailure(f"Helius {method} {path} unreachable: {type(e).__name__}") from e

    def _raise_for_status(self, response: httpx.Response, action: str):
        if response.is_error:
            logger.error(f"Error {action}: HTTP {response.status_code} {response.text[:200]}")
            raise UpstreamFailure(
                f"Helius rejected {action} with HTTP {response.status_code}",
                {"status_code": response.status_code}
            )

    def _json_object(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            logger.error(f"Error {action}: body is not JSON: {response.text[:200]}")
            raise UpstreamFailure(f"Helius returned a non-JSON body for {action}") from None
        if not isinstance(body, dict):
            raise UpstreamFailure(f"Helius returned an unexpected body for {action}")
        return body

    def create_subscription(self, callback_url: str, types: Sequence[str], addresses: Sequence[str]) -> str:
        """Create a webhook and return its ID."""
        payload = {
            "webhookURL": callback_url,
            "transactionTypes": list(types) or [ANY_TRANSACTION_TYPE],
            "accountAddresses": list(addresses),
            "webhookType": self.webhook_type,
        }
        if self.auth_header:
            payload["authHeader"] = self.auth_header

        response = self._request("POST", "/webhooks", json=payload)
        self._raise_for_status(response, "webhook creation")
        result = self._json_object(response, "webhook creation")
        webhook_id = result.get("webhookID")
        if not webhook_id:
            raise UpstreamFailure("Helius response did not include a webhookID")
        logger.info(
            f"Webhook created successfully: {webhook_id} "
            f"({len(payload['transactionTypes'])} types, {len(payload['accountAddresses'])} addresses)"
        )
        return webhook_id

    def delete_subscription(self, webhook_id: str):
        """Delete a webhook. A webhook that no longer exists counts as deleted."""
        response = self._request("DELETE", f"/webhooks/{webhook_id}")
        if response.status_code == 404:
            logger.info(f"Webhook {webhook_id} already gone")
            return
        self._raise_for_status(response, "webhook deletion")
        logger.info(f"Webhook deleted: {webhook_id}")

    def get_subscription(self, webhook_id: str) -> Dict[str, Any]:
        """Fetch a webhook's current registration."""
        response = self._request("GET", f"/webhooks/{webhook_id}")
        self._raise_for_status(response, "webhook lookup")
        return self._json_object(response, "webhook lookup")

