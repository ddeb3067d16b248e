"""HTTP routes for the orchestration service."""
