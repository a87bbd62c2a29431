"""Metrics and HTTP health sampling."""
