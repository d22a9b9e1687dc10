"""Shared application state.

Exports a singleton BanquetEngine instance that can be imported by API
routers. It starts on in-memory storage; the application lifespan swaps in
the SQL backend when the database layer is enabled.
"""

from __future__ import annotations

from banquet_tracker.core.engine import BanquetEngine

# Global engine instance
banquet_engine = BanquetEngine()

__all__ = ["banquet_engine"]
