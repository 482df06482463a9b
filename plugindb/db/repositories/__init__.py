from plugindb.db.repositories.base import GenericRepository

__all__ = [
    "GenericRepository",
]
