"""HTTP API for flowguard."""

from flowguard.api.app import create_app

__all__ = ["create_app"]
