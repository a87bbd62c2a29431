"""Reverse proxy configuration generation."""

from domainmapper.proxy.generator import ProxyConfig, ProxyConfigGenerator, validate_upstream

__all__ = ["ProxyConfig", "ProxyConfigGenerator", "validate_upstream"]
