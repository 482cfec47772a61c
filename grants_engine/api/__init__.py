"""
Control API for the scraping engine.
"""

from .server import create_app, serve

__all__ = ["create_app", "serve"]
