"""Builder for Cloudflare provider instances."""

from __future__ import annotations

from typing import Any

from ..exceptions import NotFoundError, ValidationError
from ..models import resource_namespace
from ..services.cloudflare.client import CloudflareProvider
from ..store import ObjectStore
from ..utils.secrets import get_secret_value

DEFAULT_API_TOKEN_KEY = "CLOUDFLARE_API_TOKEN"


def create_provider_from_spec(
    store: ObjectStore,
    obj: dict[str, Any],
) -> CloudflareProvider:
    """Create a Cloudflare provider instance from a tunnel spec.

    Args:
        store: Object store used to read the API token secret
        obj: Tunnel or ClusterTunnel object

    Returns:
        Configured Cloudflare provider instance

    Raises:
        ValidationError: If configuration is invalid
    """
    cloudflare = obj.get("spec", {}).get("cloudflare") or {}

    secret_name = cloudflare.get("secret")
    if not secret_name:
        raise ValidationError("spec.cloudflare.secret is required")
    token_key = cloudflare.get(DEFAULT_API_TOKEN_KEY) or DEFAULT_API_TOKEN_KEY

    # Cluster-scoped tunnels read their secret from the operator namespace
    api_token = get_secret_value(store, resource_namespace(obj), secret_name, token_key)

    account_id = cloudflare.get("accountId")
    account_name = cloudflare.get("accountName")
    if not account_id and not account_name:
        raise ValidationError("spec.cloudflare.accountId or spec.cloudflare.accountName is required")

    provider = CloudflareProvider(account_id=account_id or "", api_token=api_token)
    if not account_id:
        try:
            provider.account_id = provider.find_account_id(account_name)
        except NotFoundError as e:
            raise ValidationError(f"Cloudflare account {account_name} not found") from e
    return provider
