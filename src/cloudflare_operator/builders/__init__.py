"""Builders for provider clients and cloudflared workloads."""

from .deployment import create_deployment_from_spec
from .provider import create_provider_from_spec

__all__ = ["create_deployment_from_spec", "create_provider_from_spec"]
