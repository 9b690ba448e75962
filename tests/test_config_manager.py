"""
Tests for ConfigManager: YAML loading, validation, persistence and cache wiring.
"""

import io
import shutil
import tempfile
import unittest
from pathlib import Path

import yaml
from rich.console import Console

from core.analysis_cache import FileCacheBackend, MemoryCacheBackend, SQLiteCacheBackend
from core.config_manager import AnalyzerConfig, ConfigManager, ScanConfig
from core.static_analyzers import available_analyzers


class ConfigManagerTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.config_path = Path(self.test_dir) / "scancore" / "config.yaml"
        self.console = Console(file=io.StringIO(), force_terminal=False, width=120)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def write_config(self, data):
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            self.config_path.write_text(data)
        else:
            self.config_path.write_text(yaml.safe_dump(data))

    def make_manager(self):
        return ConfigManager(str(self.config_path), console=self.console)

    def output(self):
        return self.console.file.getvalue()


class TestDefaults(ConfigManagerTestCase):

    def test_missing_file_uses_defaults(self):
        mgr = self.make_manager()
        self.assertEqual(mgr.config, ScanConfig())
        self.assertTrue(self.config_path.parent.exists())

    def test_default_values(self):
        config = ScanConfig()
        self.assertEqual(config.max_source_bytes, 100_000)
        self.assertEqual(config.context_window, 4)
        self.assertEqual(config.cache_ttl_seconds, 3600)
        self.assertEqual(config.enabled_analyzers(), available_analyzers())

    def test_timeout_for(self):
        config = ScanConfig(analyzer_timeout=12.0)
        config.analyzers["contextual"] = AnalyzerConfig("contextual", timeout=3)
        self.assertEqual(config.timeout_for("contextual"), 3.0)
        self.assertEqual(config.timeout_for("pattern"), 12.0)
        self.assertEqual(config.timeout_for("custom"), 12.0)


class TestLoading(ConfigManagerTestCase):

    def test_values_loaded(self):
        self.write_config({
            "max_source_bytes": 5000,
            "analyzer_timeout": 2.5,
            "cache_backend": "sqlite",
            "cache_ttl_seconds": 60,
        })
        config = self.make_manager().config
        self.assertEqual(config.max_source_bytes, 5000)
        self.assertEqual(config.analyzer_timeout, 2.5)
        self.assertEqual(config.cache_backend, "sqlite")
        self.assertEqual(config.cache_ttl_seconds, 60)

    def test_analyzer_settings(self):
        self.write_config({
            "analyzers": {
                "quality": False,
                "contextual": {"timeout": 3, "name": "ignored"},
            }
        })
        mgr = self.make_manager()
        self.assertNotIn("quality", mgr.enabled_analyzers())
        self.assertEqual(mgr.get_analyzer_config("contextual").timeout, 3)
        self.assertEqual(mgr.get_analyzer_config("contextual").name, "contextual")

    def test_invalid_values_kept_at_default(self):
        self.write_config({
            "max_source_bytes": -1,
            "cache_backend": "redis",
            "cache_enabled": "yes",
            "context_window": True,
        })
        config = self.make_manager().config
        self.assertEqual(config.max_source_bytes, 100_000)
        self.assertEqual(config.cache_backend, "memory")
        self.assertTrue(config.cache_enabled)
        self.assertEqual(config.context_window, 4)
        self.assertIn("Invalid value for max_source_bytes", self.output())
        self.assertIn("Invalid value for cache_backend", self.output())

    def test_unknown_keys_ignored(self):
        self.write_config({"colour": "blue", "max_source_bytes": 2048})
        config = self.make_manager().config
        self.assertFalse(hasattr(config, "colour"))
        self.assertEqual(config.max_source_bytes, 2048)

    def test_unknown_analyzer_warned(self):
        self.write_config({"analyzers": {"mythril": True}})
        mgr = self.make_manager()
        self.assertIsNone(mgr.get_analyzer_config("mythril"))
        self.assertIn("Unknown analyzer in config: mythril", self.output())

    def test_bad_analyzer_settings_warned(self):
        self.write_config({"analyzers": {"pattern": {"priority": 1}}})
        mgr = self.make_manager()
        self.assertTrue(mgr.get_analyzer_config("pattern").enabled)
        self.assertIn("Invalid settings for pattern", self.output())

    def test_non_mapping_file(self):
        self.write_config("- one\n- two\n")
        self.assertEqual(self.make_manager().config, ScanConfig())
        self.assertIn("must contain a mapping", self.output())

    def test_malformed_yaml(self):
        self.write_config("max_source_bytes: [unclosed\n")
        self.assertEqual(self.make_manager().config, ScanConfig())
        self.assertIn("Could not load config file", self.output())

    def test_empty_file(self):
        self.write_config("")
        self.assertEqual(self.make_manager().config, ScanConfig())


class TestPersistence(ConfigManagerTestCase):

    def test_save_and_reload(self):
        mgr = self.make_manager()
        mgr.config.analyzer_timeout = 7.0
        mgr.config.cache_backend = "file"
        self.assertTrue(mgr.disable_analyzer("quality"))
        mgr.save_config()

        reloaded = self.make_manager()
        self.assertEqual(reloaded.config.analyzer_timeout, 7.0)
        self.assertEqual(reloaded.config.cache_backend, "file")
        self.assertFalse(reloaded.get_analyzer_config("quality").enabled)
        self.assertEqual(reloaded.config, mgr.config)

    def test_enable_disable(self):
        mgr = self.make_manager()
        self.assertTrue(mgr.disable_analyzer("pattern"))
        self.assertNotIn("pattern", mgr.enabled_analyzers())
        self.assertTrue(mgr.enable_analyzer("pattern"))
        self.assertIn("pattern", mgr.enabled_analyzers())
        self.assertFalse(mgr.enable_analyzer("mythril"))
        self.assertFalse(mgr.disable_analyzer("mythril"))


class TestCacheWiring(ConfigManagerTestCase):

    def test_memory_cache(self):
        cache = self.make_manager().build_cache()
        self.assertIsInstance(cache.backend, MemoryCacheBackend)
        self.assertEqual(cache.ttl_seconds, 3600)

    def test_cache_disabled(self):
        self.write_config({"cache_enabled": False})
        self.assertIsNone(self.make_manager().build_cache())

    def test_file_cache(self):
        cache_dir = Path(self.test_dir) / "file_cache"
        self.write_config({"cache_backend": "file", "cache_dir": str(cache_dir)})
        cache = self.make_manager().build_cache()
        self.assertIsInstance(cache.backend, FileCacheBackend)
        self.assertEqual(cache.backend.cache_dir, cache_dir.resolve())

    def test_sqlite_cache(self):
        cache_dir = Path(self.test_dir) / "db_cache"
        self.write_config({"cache_backend": "sqlite", "cache_dir": str(cache_dir), "cache_ttl_seconds": 30})
        cache = self.make_manager().build_cache()
        self.assertIsInstance(cache.backend, SQLiteCacheBackend)
        self.assertTrue(cache.backend.db_path.exists())
        self.assertEqual(cache.ttl_seconds, 30)


class TestDisplay(ConfigManagerTestCase):

    def test_show_config(self):
        mgr = self.make_manager()
        mgr.disable_analyzer("quality")
        mgr.show_config()
        text = self.output()
        self.assertIn("Scan Configuration", text)
        self.assertIn("Analyzer Configuration", text)
        for name in available_analyzers():
            self.assertIn(name, text)
        self.assertIn("100000 bytes", text)


if __name__ == "__main__":
    unittest.main()
