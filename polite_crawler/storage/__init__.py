"""
Storage layer for the crawler.
"""

from .database import ContentStoreManager, FileContentStore, CassandraContentStore, DatabaseError
from .seen_filter import BloomFilter, SeenURLFilter, MemorySeenStore, RedisSeenStore

__all__ = [
    'ContentStoreManager', 'FileContentStore', 'CassandraContentStore', 'DatabaseError',
    'BloomFilter', 'SeenURLFilter', 'MemorySeenStore', 'RedisSeenStore'
]
