import os
import tempfile
import unittest

from hellobot.config import ConfigError, Settings, load_settings
from hellobot.utils import get_config, mask_token, normalize_id

ENV = {
    "HOMESERVER_URL": "https://hs.example.org/",
    "ACCESS_TOKEN": "tok",
}


class LoadSettingsTests(unittest.TestCase):
    def test_defaults_apply_without_config(self):
        settings = load_settings(env=ENV, config={})

        self.assertEqual(settings.homeserver, "https://hs.example.org")
        self.assertEqual(settings.access_token, "tok")
        self.assertEqual(settings.command_prefix, "!hello")
        self.assertEqual(settings.reply_text, "Hello world!")
        self.assertTrue(settings.skip_initial_timeline)
        self.assertFalse(settings.can_login)

    def test_config_sections_are_read(self):
        config = {
            "bot": {"store_path": "/tmp/s.json", "auto_join": False},
            "commands": {"prefix": "!hi", "reply": "Hi!"},
            "sync": {"timeout_ms": 5000, "backoff_max": 10, "dedupe_window": 50},
            "dispatch": {"handler_timeout_seconds": 3},
            "logging": {"level": "debug"},
        }
        settings = load_settings(env=ENV, config=config)

        self.assertEqual(settings.store_path, "/tmp/s.json")
        self.assertFalse(settings.auto_join)
        self.assertEqual(settings.command_prefix, "!hi")
        self.assertEqual(settings.reply_text, "Hi!")
        self.assertEqual(settings.sync_timeout_ms, 5000)
        self.assertEqual(settings.backoff_max, 10.0)
        self.assertEqual(settings.dedupe_window, 50)
        self.assertEqual(settings.handler_timeout, 3.0)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_environment_overrides_config(self):
        env = dict(ENV, BOT_STORE_PATH="/data/session.json", LOG_LEVEL="warning",
                   BOT_USER_ID=" @bot:example.org ")
        config = {"bot": {"store_path": "/tmp/s.json"}, "logging": {"level": "DEBUG"}}
        settings = load_settings(env=env, config=config)

        self.assertEqual(settings.store_path, "/data/session.json")
        self.assertEqual(settings.log_level, "WARNING")
        self.assertEqual(settings.user_id, "@bot:example.org")

    def test_password_login_without_token(self):
        env = {"HOMESERVER_URL": "https://hs", "BOT_USERNAME": "bot", "BOT_PASSWORD": "pw"}
        settings = load_settings(env=env, config={})
        self.assertTrue(settings.can_login)
        self.assertEqual(settings.access_token, "")

    def test_missing_homeserver_is_rejected(self):
        with self.assertRaises(ConfigError):
            load_settings(env={"ACCESS_TOKEN": "tok"}, config={})

    def test_missing_credentials_are_rejected(self):
        with self.assertRaises(ConfigError):
            load_settings(env={"HOMESERVER_URL": "https://hs", "BOT_USERNAME": "bot"}, config={})

    def test_malformed_values_are_rejected(self):
        with self.assertRaises(ConfigError):
            load_settings(env=ENV, config={"sync": {"timeout_ms": "soon"}})
        with self.assertRaises(ConfigError):
            load_settings(env=ENV, config={"sync": "fast"})

    def test_settings_are_frozen(self):
        settings = Settings(homeserver="https://hs")
        with self.assertRaises(AttributeError):
            settings.homeserver = "https://other"


class GetConfigTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.default_path = os.path.join(self._tmp.name, "default.config.toml")
        self.user_path = os.path.join(self._tmp.name, "user.config.toml")
        with open(self.default_path, "w", encoding="utf-8") as fh:
            fh.write('[commands]\nprefix = "!hello"\nreply = "Hello world!"\n\n[sync]\ntimeout_ms = 30000\n')

    def tearDown(self):
        self._tmp.cleanup()

    def test_user_config_is_deep_merged(self):
        with open(self.user_path, "w", encoding="utf-8") as fh:
            fh.write('[commands]\nreply = "Howdy"\n')

        config = get_config(self.default_path, self.user_path)

        self.assertEqual(config["commands"], {"prefix": "!hello", "reply": "Howdy"})
        self.assertEqual(config["sync"]["timeout_ms"], 30000)

    def test_missing_user_config_uses_defaults(self):
        config = get_config(self.default_path, self.user_path)
        self.assertEqual(config["commands"]["reply"], "Hello world!")

    def test_shipped_default_config_loads(self):
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config = get_config(os.path.join(root, "default.config.toml"), self.user_path)
        settings = load_settings(env=ENV, config=config)
        self.assertEqual(settings, load_settings(env=ENV, config={}))


class UtilsTests(unittest.TestCase):
    def test_normalize_id(self):
        self.assertEqual(normalize_id(" @bot:x "), "@bot:x")
        self.assertIsNone(normalize_id(""))
        self.assertIsNone(normalize_id(None))
        self.assertIsNone(normalize_id(True))

    def test_mask_token(self):
        self.assertEqual(mask_token("syt_abcdefghijklmnop"), "syt_ab...klmnop")
        self.assertEqual(mask_token("short"), "*****")
        self.assertEqual(mask_token(None), "<none>")


if __name__ == "__main__":
    unittest.main()
