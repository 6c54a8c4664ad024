"""
Configuration loading and validation.
"""

import tempfile
import unittest
from pathlib import Path

from polite_crawler.errors import ConfigError
from polite_crawler.utils.config import Config, ConfigManager, load_config


class TestConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def write(self, text):
        path = Path(self.tmp.name) / 'config.yaml'
        path.write_text(text, encoding='utf-8')
        return str(path)

    def test_defaults(self):
        config = Config.from_dict({})
        config.validate()
        self.assertEqual(config.politeness.default_crawl_delay, 1.0)
        self.assertEqual(config.politeness.max_concurrent_per_host, 1)
        self.assertEqual(config.frontier.max_attempts, 3)
        self.assertEqual(config.robots.unreachable_policy, 'allow')
        self.assertFalse(config.uses_redis)

    def test_load_from_yaml(self):
        path = self.write("""
crawler:
  seed_urls: ["https://example.com/"]
  num_workers: 4
politeness:
  default_crawl_delay: 2.5
seen_filter:
  backend: redis
""")
        config = load_config(path)
        self.assertEqual(config.crawler.seed_urls, ["https://example.com/"])
        self.assertEqual(config.crawler.num_workers, 4)
        self.assertEqual(config.politeness.default_crawl_delay, 2.5)
        self.assertTrue(config.uses_redis)

    def test_unknown_section_rejected(self):
        with self.assertRaises(ConfigError):
            Config.from_dict({'crawlr': {}})

    def test_unknown_key_rejected(self):
        with self.assertRaises(ConfigError):
            Config.from_dict({'crawler': {'politeness_delay': 1}})

    def test_section_must_be_mapping(self):
        with self.assertRaises(ConfigError):
            Config.from_dict({'crawler': ['a', 'b']})

    def test_invalid_values(self):
        cases = [
            {'politeness': {'max_concurrent_per_host': 0}},
            {'crawler': {'num_workers': 0}},
            {'robots': {'unreachable_policy': 'sometimes'}},
            {'seen_filter': {'error_rate': 1.0}},
            {'storage': {'type': 'sqlite'}},
            {'sharding': {'enabled': True, 'shard_id': 'x', 'shard_ids': ['a', 'b']}},
            {'sharding': {'enabled': True, 'shard_id': 'a', 'shard_ids': ['a', 'b'], 'inbox_max_failures': 0}},
        ]
        for data in cases:
            with self.subTest(data=data):
                with self.assertRaises(ConfigError):
                    Config.from_dict(data).validate()

    def test_invalid_yaml(self):
        path = self.write("crawler: [unclosed\n")
        with self.assertRaises(ConfigError):
            load_config(path)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_config(str(Path(self.tmp.name) / 'absent.yaml'))

    def test_manager_requires_load(self):
        manager = ConfigManager(self.write("{}"))
        with self.assertRaises(ConfigError):
            manager.config
        manager.load_config()
        self.assertIsInstance(manager.config, Config)

    def test_example_config_is_valid(self):
        example = Path(__file__).resolve().parent.parent / 'config.yaml'
        config = load_config(str(example))
        self.assertTrue(config.crawler.seed_urls)
        self.assertEqual(config.storage.type, 'file')


if __name__ == "__main__":
    unittest.main()
