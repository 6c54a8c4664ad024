"""
Content store: where the coordinator hands fetched pages.

Each fetch of a URL is one record keyed by ``content_key(url, timestamp)``.
A re-fetch produces a new record; replaying the same fetch is a no-op.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.config import StorageConfig


STORAGE_VERSION = '1.0'


class DatabaseError(Exception):
    """Raised when a content store backend cannot persist or connect."""
    pass


def content_key(url: str, timestamp: float) -> str:
    return hashlib.sha256(f"{url}|{timestamp:.6f}".encode('utf-8')).hexdigest()


def _fetched_at(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class ContentStore:
    """Interface every content store backend implements."""

    async def initialize(self):
        raise NotImplementedError

    async def store(self, url: str, body: str, headers: Dict[str, str], timestamp: float) -> str:
        """Persist one fetched page and return its content key."""
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class FileContentStore(ContentStore):
    """
    One JSON document per fetch under ``<data_directory>/content``.

    Documents are fanned out into subdirectories by the first two hex
    characters of their key and written via a temporary file, so a
    reader never sees a partial document.
    """

    def __init__(self, data_directory: str):
        self.root = Path(data_directory) / 'content'
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'already_stored': 0,
            'total_size_bytes': 0
        }

    async def initialize(self):
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(f"Cannot create content directory {self.root}: {e}")
        self.logger.info(f"File content store at {self.root}")

    def path_for(self, key: str) -> Path:
        return self.root / key[:2] / f"{key}.json"

    async def store(self, url: str, body: str, headers: Dict[str, str], timestamp: float) -> str:
        key = content_key(url, timestamp)
        path = self.path_for(key)
        if path.exists():
            self.stats['already_stored'] += 1
            return key

        document = {
            'url': url,
            'fetched_at': _fetched_at(timestamp).isoformat(),
            'headers': dict(headers),
            'body': body,
            'storage_version': STORAGE_VERSION,
        }

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            partial = path.with_suffix('.tmp')
            with open(partial, 'w', encoding='utf-8') as f:
                json.dump(document, f, ensure_ascii=False)
            partial.replace(path)
            size = path.stat().st_size
        except OSError as e:
            raise DatabaseError(f"Cannot write {path} for {url}: {e}")

        self.stats['total_stored'] += 1
        self.stats['total_size_bytes'] += size
        self.logger.debug(f"Stored {url} as {key}")
        return key

    async def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)

    async def close(self):
        pass


class CassandraContentStore(ContentStore):
    """Upserts fetched pages into a ``fetched_pages`` table."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.keyspace = config.get('keyspace', 'crawler_data')
        self.cluster = None
        self.session = None
        self.insert_statement = None
        self.logger = logging.getLogger(__name__)
        self.stats = {'total_stored': 0}

    async def initialize(self):
        from cassandra.auth import PlainTextAuthProvider
        from cassandra.cluster import Cluster
        from cassandra.policies import DCAwareRoundRobinPolicy

        auth_provider = None
        if self.config.get('username'):
            auth_provider = PlainTextAuthProvider(
                username=self.config['username'],
                password=self.config.get('password')
            )

        try:
            self.cluster = Cluster(
                self.config.get('hosts', ['localhost']),
                port=self.config.get('port', 9042),
                auth_provider=auth_provider,
                load_balancing_policy=DCAwareRoundRobinPolicy()
            )
            self.session = self.cluster.connect()
            self.session.execute(f"""
                CREATE KEYSPACE IF NOT EXISTS {self.keyspace}
                WITH replication = {{
                    'class': 'SimpleStrategy',
                    'replication_factor': {self.config.get('replication_factor', 1)}
                }}
            """)
            self.session.set_keyspace(self.keyspace)
            self.session.execute("""
                CREATE TABLE IF NOT EXISTS fetched_pages (
                    content_key text PRIMARY KEY,
                    url text,
                    body text,
                    headers map<text, text>,
                    fetched_at timestamp
                )
            """)
            self.insert_statement = self.session.prepare("""
                INSERT INTO fetched_pages (content_key, url, body, headers, fetched_at)
                VALUES (?, ?, ?, ?, ?)
            """)
        except Exception as e:
            raise DatabaseError(f"Cannot prepare Cassandra keyspace {self.keyspace}: {e}")

        self.logger.info(f"Cassandra content store using keyspace {self.keyspace}")

    async def store(self, url: str, body: str, headers: Dict[str, str], timestamp: float) -> str:
        key = content_key(url, timestamp)
        row = (key, url, body, dict(headers), _fetched_at(timestamp))
        try:
            # INSERT is an upsert
            self.session.execute(self.insert_statement, row)
        except Exception as e:
            raise DatabaseError(f"Cassandra write failed for {url}: {e}")

        self.stats['total_stored'] += 1
        return key

    async def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)

    async def close(self):
        if self.cluster:
            self.cluster.shutdown()
            self.logger.info("Cassandra cluster connection shut down")


class ContentStoreManager:
    """
    Builds the backend named by ``storage.type`` ('file', 'cassandra' or
    'none'). With 'none', ``store`` accepts pages and returns None.
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self.backend: Optional[ContentStore] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        backend_type = self.config.type.lower()

        if backend_type == 'none':
            self.logger.info("Content storage disabled")
            return
        if backend_type == 'file':
            self.backend = FileContentStore(self.config.file.get('data_directory', 'data'))
        elif backend_type == 'cassandra':
            self.backend = CassandraContentStore(self.config.cassandra)
        else:
            raise DatabaseError(f"Unknown storage type: {backend_type}")

        await self.backend.initialize()

    async def store(self, url: str, body: str, headers: Dict[str, str], timestamp: float) -> Optional[str]:
        if self.backend is None:
            return None
        return await self.backend.store(url, body, headers, timestamp)

    async def get_stats(self) -> Dict[str, Any]:
        if self.backend is None:
            return {}
        return await self.backend.get_stats()

    async def close(self):
        if self.backend:
            await self.backend.close()
