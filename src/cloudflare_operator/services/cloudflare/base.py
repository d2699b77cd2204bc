"""Base Cloudflare provider interface."""

from __future__ import annotations

from typing import Any, Protocol

from ...models import CreatedTunnel


class TunnelProvider(Protocol):
    """Protocol defining the Cloudflare operations the reconcilers consume."""

    account_id: str

    def create_tunnel(self, name: str) -> CreatedTunnel:
        """Create a named tunnel. Raises AlreadyExistsError on a duplicate name."""
        ...

    def get_tunnel_id(self, name: str) -> str:
        """Look up a live tunnel by name. Raises NotFoundError when absent."""
        ...

    def get_tunnel(self, tunnel_id: str) -> dict[str, Any]:
        """Get a tunnel by id. Raises NotFoundError when absent."""
        ...

    def delete_tunnel(self, tunnel_id: str) -> None:
        """Delete a tunnel. Raises NotFoundError when absent."""
        ...

    def list_tunnel_dependents(self, tunnel_id: str) -> list[dict[str, Any]]:
        """List routes still attached to a tunnel."""
        ...

    def delete_tunnel_dependents(self, tunnel_id: str) -> None:
        """Delete attached routes and active connections of a tunnel."""
        ...

    def set_tunnel_configuration(self, tunnel_id: str, config: dict[str, Any]) -> int:
        """Replace the remote ingress configuration, returning its version."""
        ...

    def find_dns_record(self, zone_id: str, hostname: str) -> dict[str, Any] | None:
        """Find the DNS record for a hostname."""
        ...

    def create_dns_record(self, zone_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Create a DNS record."""
        ...

    def update_dns_record(self, zone_id: str, record_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Replace a DNS record."""
        ...

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        """Delete a DNS record. Raises NotFoundError when absent."""
        ...

    def get_zone_id(self, domain: str) -> str:
        """Look up the zone of a domain. Raises NotFoundError when absent."""
        ...
