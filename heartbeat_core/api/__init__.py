"""
API MODULE
==========

FastAPI operational API for heartbeat_core.

Usage:
    uvicorn heartbeat_core.api.app:app --port 8432
    # or
    python -m heartbeat_core.cli serve
"""

from .app import create_app

__all__ = ['create_app']
