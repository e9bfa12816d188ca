"""HTTP surface for queue actions and worker triggers."""

from scan_orchestrator.api.app import create_app

__all__ = ["create_app"]
