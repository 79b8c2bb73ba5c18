"""HTTP interface for the LMS services."""

from .server import create_app

__all__ = ["create_app"]
