"""Cloudflare API client implementation."""

from __future__ import annotations

import base64
import logging
import os
import secrets
import time
from typing import Any

import requests

from ... import metrics
from ...exceptions import (
    AlreadyExistsError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from ...models import CreatedTunnel, TunnelCredentials
from ...utils.rate_limit import rate_limit_cloudflare

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.getenv("CLOUDFLARE_API_BASE_URL", "https://api.cloudflare.com/client/v4")
DEFAULT_TIMEOUT = float(os.getenv("CLOUDFLARE_API_TIMEOUT_SECONDS", "30"))

# Cloudflare error codes reported for duplicate names
DUPLICATE_ERROR_CODES = {1013, 81053, 81057, 10002}


def generate_tunnel_secret() -> str:
    """Generate the 32 byte tunnel secret, base64 encoded."""
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


class CloudflareProvider:
    """Cloudflare provider implementation."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize Cloudflare provider.

        Args:
            account_id: Cloudflare account ID
            api_token: API token with tunnel and DNS permissions
            base_url: API base URL
            timeout: Per-request timeout in seconds
            session: Optional requests session
        """
        self.account_id = account_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        start_time = time.time()
        try:
            response = rate_limit_cloudflare(self.session.request)(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            metrics.api_call_total.labels(api_type="cloudflare", operation=operation, result="error").inc()
            raise TransientError(f"{operation} failed: {type(e).__name__}") from e
        finally:
            duration = time.time() - start_time
            metrics.api_call_duration_seconds.labels(api_type="cloudflare", operation=operation).observe(duration)

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.ok and payload.get("success", True):
            metrics.api_call_total.labels(api_type="cloudflare", operation=operation, result="success").inc()
            return payload.get("result")

        metrics.api_call_total.labels(api_type="cloudflare", operation=operation, result="error").inc()
        raise self._translate_error(operation, response.status_code, payload)

    def _translate_error(self, operation: str, status_code: int, payload: dict[str, Any]) -> Exception:
        errors = payload.get("errors") or []
        codes = {err.get("code") for err in errors}
        detail = "; ".join(str(err.get("message", "")) for err in errors) or f"HTTP {status_code}"
        message = f"{operation} failed: {detail}"

        if status_code == 404:
            return NotFoundError(message)
        if status_code == 409 or codes & DUPLICATE_ERROR_CODES or "already exists" in detail.lower():
            return AlreadyExistsError(message)
        if status_code == 429:
            metrics.rate_limit_hits_total.labels(api_type="cloudflare").inc()
            return TransientError(message)
        if status_code >= 500:
            return TransientError(message)
        if status_code in (400, 422):
            return ValidationError(message)
        return TransientError(message)

    # Tunnels

    def create_tunnel(self, name: str) -> CreatedTunnel:
        tunnel_secret = generate_tunnel_secret()
        result = self._request(
            "POST",
            f"/accounts/{self.account_id}/cfd_tunnel",
            "create_tunnel",
            json={"name": name, "tunnel_secret": tunnel_secret, "config_src": "cloudflare"},
        )
        tunnel_id = result["id"]
        logger.info(f"Created tunnel {name} ({tunnel_id})")
        return CreatedTunnel(
            tunnel_id=tunnel_id,
            credentials=TunnelCredentials(
                account_tag=self.account_id,
                tunnel_id=tunnel_id,
                tunnel_secret=tunnel_secret,
                tunnel_name=name,
            ),
        )

    def get_tunnel_id(self, name: str) -> str:
        result = self._request(
            "GET",
            f"/accounts/{self.account_id}/cfd_tunnel",
            "list_tunnels",
            params={"name": name, "is_deleted": "false"},
        )
        for tunnel in result or []:
            if tunnel.get("name") == name and not tunnel.get("deleted_at"):
                return tunnel["id"]
        raise NotFoundError(f"Tunnel {name} not found")

    def get_tunnel(self, tunnel_id: str) -> dict[str, Any]:
        return self._request("GET", f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}", "get_tunnel")

    def delete_tunnel(self, tunnel_id: str) -> None:
        self._request("DELETE", f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}", "delete_tunnel")
        logger.info(f"Deleted tunnel {tunnel_id}")

    def list_tunnel_dependents(self, tunnel_id: str) -> list[dict[str, Any]]:
        result = self._request(
            "GET",
            f"/accounts/{self.account_id}/teamnet/routes",
            "list_tunnel_routes",
            params={"tunnel_id": tunnel_id, "is_deleted": "false"},
        )
        return list(result or [])

    def delete_tunnel_dependents(self, tunnel_id: str) -> None:
        for route in self.list_tunnel_dependents(tunnel_id):
            try:
                self._request(
                    "DELETE",
                    f"/accounts/{self.account_id}/teamnet/routes/{route['id']}",
                    "delete_tunnel_route",
                )
            except NotFoundError:
                logger.debug(f"Route {route.get('id')} already deleted")
        try:
            self._request(
                "DELETE",
                f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}/connections",
                "cleanup_tunnel_connections",
            )
        except NotFoundError:
            logger.debug(f"Tunnel {tunnel_id} has no connections to clean up")

    def set_tunnel_configuration(self, tunnel_id: str, config: dict[str, Any]) -> int:
        result = self._request(
            "PUT",
            f"/accounts/{self.account_id}/cfd_tunnel/{tunnel_id}/configurations",
            "update_tunnel_configuration",
            json={"config": config},
        )
        return int((result or {}).get("version", 0))

    # DNS records

    def find_dns_record(self, zone_id: str, hostname: str) -> dict[str, Any] | None:
        result = self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            "list_dns_records",
            params={"name": hostname},
        )
        for record in result or []:
            if record.get("name") == hostname:
                return record
        return None

    def create_dns_record(self, zone_id: str, record: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/zones/{zone_id}/dns_records", "create_dns_record", json=record)

    def update_dns_record(self, zone_id: str, record_id: str, record: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", f"/zones/{zone_id}/dns_records/{record_id}", "update_dns_record", json=record)

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}", "delete_dns_record")

    # Accounts and zones

    def find_account_id(self, account_name: str) -> str:
        result = self._request("GET", "/accounts", "list_accounts", params={"name": account_name})
        for account in result or []:
            if account.get("name") == account_name:
                return account["id"]
        raise NotFoundError(f"Account {account_name} not found")

    def get_zone_id(self, domain: str) -> str:
        result = self._request("GET", "/zones", "list_zones", params={"name": domain})
        for zone in result or []:
            if zone.get("name") == domain:
                return zone["id"]
        raise NotFoundError(f"Zone {domain} not found")
