"""
Content store backends.
"""

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from polite_crawler.storage.database import (
    CassandraContentStore, ContentStoreManager, DatabaseError, FileContentStore, content_key
)
from polite_crawler.utils.config import StorageConfig


class TestFileContentStore(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = FileContentStore(self.tmp.name)
        await self.store.initialize()

    async def asyncTearDown(self):
        await self.store.close()
        self.tmp.cleanup()

    async def test_store_writes_document(self):
        key = await self.store.store("http://a.test/", "<html></html>", {"Content-Type": "text/html"}, 1700000000.0)
        path = Path(self.tmp.name) / 'content' / key[:2] / f"{key}.json"
        data = json.loads(path.read_text(encoding='utf-8'))
        self.assertEqual(data['url'], "http://a.test/")
        self.assertEqual(data['body'], "<html></html>")
        self.assertEqual(data['headers'], {"Content-Type": "text/html"})
        self.assertTrue(data['fetched_at'].startswith("2023-11-14T22:13:20"))

    async def test_store_is_idempotent_per_fetch(self):
        first = await self.store.store("http://a.test/", "v1", {}, 1.0)
        second = await self.store.store("http://a.test/", "v2", {}, 1.0)
        self.assertEqual(first, second)
        stats = await self.store.get_stats()
        self.assertEqual(stats['total_stored'], 1)
        self.assertEqual(stats['already_stored'], 1)

    async def test_refetch_gets_new_key(self):
        first = await self.store.store("http://a.test/", "v1", {}, 1.0)
        second = await self.store.store("http://a.test/", "v2", {}, 2.0)
        self.assertNotEqual(first, second)
        self.assertEqual(first, content_key("http://a.test/", 1.0))


class TestCassandraContentStore(unittest.IsolatedAsyncioTestCase):

    async def test_store_upserts_prepared_row(self):
        store = CassandraContentStore({'keyspace': 'test'})
        store.session = MagicMock()
        store.insert_statement = object()

        key = await store.store("http://a.test/", "<html></html>", {}, 1.0)

        statement, params = store.session.execute.call_args.args
        self.assertIs(statement, store.insert_statement)
        self.assertEqual(params[0], key)
        self.assertEqual(params[1], "http://a.test/")

    async def test_driver_errors_are_wrapped(self):
        store = CassandraContentStore({})
        store.session = MagicMock()
        store.session.execute.side_effect = RuntimeError("node down")
        with self.assertRaises(DatabaseError):
            await store.store("http://a.test/", "", {}, 1.0)


class TestContentStoreManager(unittest.IsolatedAsyncioTestCase):

    async def test_disabled_storage(self):
        manager = ContentStoreManager(StorageConfig(type='none'))
        await manager.initialize()
        self.assertIsNone(await manager.store("http://a.test/", "", {}, 1.0))
        self.assertEqual(await manager.get_stats(), {})
        await manager.close()

    async def test_unknown_backend(self):
        manager = ContentStoreManager(StorageConfig(type='sqlite'))
        with self.assertRaises(DatabaseError):
            await manager.initialize()

    async def test_file_backend(self):
        with tempfile.TemporaryDirectory() as tmp:
            manager = ContentStoreManager(StorageConfig(type='file', file={'data_directory': tmp}))
            await manager.initialize()
            self.assertIsInstance(manager.backend, FileContentStore)
            self.assertIsNotNone(await manager.store("http://a.test/", "x", {}, 1.0))
            await manager.close()


if __name__ == "__main__":
    unittest.main()
