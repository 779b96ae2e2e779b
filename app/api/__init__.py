# app/api/__init__.py
"""
🌐 HTTP + WebSocket API of the ordering service.
"""

from app.api.app import create_app

__all__ = ["create_app"]
