"""HTTP façade over the agency billing services."""

from agency_api.app import create_app

__all__ = ["create_app"]
