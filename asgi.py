"""
asgi.py -- ASGI entry point for pmo-access.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --workers 1

One worker per process: the realtime ChannelHub keeps its connection registry
in memory, so events emitted in one process never reach sockets held by
another.
"""

from api.main import app

__all__ = ["app"]
