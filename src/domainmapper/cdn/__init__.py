"""Managed CDN API client."""

from domainmapper.cdn.cloudflare import CloudflareClient, Zone

__all__ = ["CloudflareClient", "Zone"]
