"""
HTTP and websocket API of the Skyboard aggregator.
"""

from .http_server import create_app, router

__all__ = ["create_app", "router"]
