from .base import Storage
from .memory import InMemoryStorage
from .sql import SqlStorage

__all__ = ["Storage", "InMemoryStorage", "SqlStorage"]
