"""Cloudflare API provider."""

from .base import TunnelProvider
from .client import CloudflareProvider

__all__ = ["CloudflareProvider", "TunnelProvider"]
