"""Log storage backed by Redis."""

from libs.storage.log_store import RedisLogStore, get_log_store

__all__ = ["RedisLogStore", "get_log_store"]
