"""Clients for external services (video provider, object storage)."""
