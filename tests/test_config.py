import json
import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mediacache.config import CONFIG_FILE, DEFAULT_CONFIG, ConfigManager, ProxyOptions


class TestConfigManager(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp(prefix="mediacache_cfg_")
        self.config_file = os.path.join(self.test_dir, "mediacache.json")

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_defaults_when_file_missing(self):
        cm = ConfigManager(self.config_file)
        self.assertEqual(65536, cm.get("proxy_buffer_size"))
        self.assertEqual(3000, cm.get("proxy_connect_timeout_ms"))
        self.assertEqual(3000, cm.get("proxy_read_timeout_ms"))

    def test_get_default_value(self):
        cm = ConfigManager(self.config_file)
        self.assertEqual("default", cm.get("non_existent_key", "default"))

    def test_set_persists(self):
        cm = ConfigManager(self.config_file)
        cm.set("proxy_read_timeout_ms", 1234)
        self.assertTrue(os.path.exists(self.config_file))
        self.assertEqual(1234, ConfigManager(self.config_file).get("proxy_read_timeout_ms"))

    def test_missing_keys_are_merged_without_clobbering(self):
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump({"proxy_buffer_size": 8192, "custom": "kept"}, f)
        cm = ConfigManager(self.config_file)
        self.assertEqual(8192, cm.get("proxy_buffer_size"))
        self.assertEqual("kept", cm.get("custom"))
        self.assertEqual(DEFAULT_CONFIG["proxy_read_timeout_ms"], cm.get("proxy_read_timeout_ms"))

    def test_corrupt_file_falls_back_to_defaults(self):
        with open(self.config_file, "w", encoding="utf-8") as f:
            f.write("{not json")
        cm = ConfigManager(self.config_file)
        self.assertEqual(DEFAULT_CONFIG["proxy_buffer_size"], cm.get("proxy_buffer_size"))

    def test_defaults_are_not_shared(self):
        cm = ConfigManager(self.config_file)
        cm.config["proxy_buffer_size"] = 1
        self.assertEqual(65536, DEFAULT_CONFIG["proxy_buffer_size"])

    def test_proxy_options_from_config(self):
        cm = ConfigManager(self.config_file)
        cm.config.update({"proxy_connect_timeout_ms": 500, "proxy_concurrent": False})
        opts = cm.proxy_options()
        self.assertEqual(500, opts.connect_timeout_ms)
        self.assertFalse(opts.concurrent)
        self.assertEqual((0.5, 3.0), opts.timeout)


class TestProxyOptions(unittest.TestCase):

    def test_defaults(self):
        opts = ProxyOptions()
        self.assertEqual(65536, opts.buffer_size)
        self.assertEqual((3.0, 3.0), opts.timeout)
        self.assertTrue(opts.concurrent)
        self.assertTrue(opts.forward_host_header)
        self.assertFalse(opts.debug_logs)

    def test_values_are_clamped(self):
        opts = ProxyOptions(buffer_size=1, connect_timeout_ms=0, poll_interval=0)
        self.assertEqual(1024, opts.buffer_size)
        self.assertEqual(1, opts.connect_timeout_ms)
        self.assertGreater(opts.poll_interval, 0)

    def test_coalesce_wait_defaults_and_clamp(self):
        self.assertEqual(3000, ProxyOptions().coalesce_wait_ms)
        self.assertEqual(0, ProxyOptions(coalesce_wait_ms=-1).coalesce_wait_ms)
        opts = ProxyOptions.from_config({"proxy_coalesce_wait_ms": 250})
        self.assertEqual(250, opts.coalesce_wait_ms)


class TestDefaultConfigFile(unittest.TestCase):

    def test_default_path_is_in_home_directory(self):
        self.assertEqual(os.path.expanduser("~"), os.path.dirname(CONFIG_FILE))


if __name__ == '__main__':
    unittest.main()
