from __future__ import annotations

# Minimal entrypoint module for ASGI servers
# Exposes the FastAPI app constructed in banquet_tracker.api.routes
from banquet_tracker.api.routes import app

__all__ = ["app"]
