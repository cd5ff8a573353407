import json
import os
import tempfile
import unittest
from unittest.mock import patch

from fakes import BOT
from hellobot.errors import PersistenceError
from hellobot.store import JsonSessionStore
from hellobot.tokens import Credential


class JsonSessionStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "nested", "session.json")

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_is_an_empty_session(self):
        store = JsonSessionStore(self.path)
        self.assertIsNone(store.load_credential())
        self.assertIsNone(store.load_cursor())

    def test_credential_and_cursor_survive_a_restart(self):
        credential = Credential(token="tok", user_id=BOT, issued_at=5.0, device_id="DEV")
        store = JsonSessionStore(self.path)
        store.save_credential(credential)
        store.save_cursor("s42")

        reopened = JsonSessionStore(self.path)
        self.assertEqual(reopened.load_credential(), credential)
        self.assertEqual(reopened.load_cursor(), "s42")

    def test_keys_written_by_another_process_are_kept(self):
        store = JsonSessionStore(self.path)
        store.save_cursor("s1")

        other = JsonSessionStore(self.path)
        other.save_credential(Credential(token="from-cli", user_id=BOT, issued_at=1.0))

        store.save_cursor("s2")

        with open(self.path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        self.assertEqual(data["cursor"], "s2")
        self.assertEqual(data["credential"]["token"], "from-cli")

    def test_unchanged_cursor_is_not_rewritten(self):
        store = JsonSessionStore(self.path)
        store.save_cursor("s1")
        with patch.object(store, "_write") as write:
            store.save_cursor("s1")
        write.assert_not_called()

    def test_corrupt_file_raises_persistence_error(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write("{not json")
        with self.assertRaises(PersistenceError):
            JsonSessionStore(self.path).load()

    def test_non_object_document_raises_persistence_error(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump(["cursor"], fh)
        with self.assertRaises(PersistenceError):
            JsonSessionStore(self.path).load_cursor()

    def test_malformed_credential_raises_persistence_error(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump({"credential": {"user_id": BOT}}, fh)
        with self.assertRaises(PersistenceError):
            JsonSessionStore(self.path).load_credential()

    def test_write_failure_raises_persistence_error_and_keeps_old_file(self):
        store = JsonSessionStore(self.path)
        store.save_cursor("s1")
        with patch("hellobot.store.os.replace", side_effect=OSError("read-only")):
            with self.assertRaises(PersistenceError):
                store.save_cursor("s2")

        self.assertEqual(JsonSessionStore(self.path).load_cursor(), "s1")
        leftovers = [n for n in os.listdir(os.path.dirname(self.path)) if n.endswith(".tmp")]
        self.assertEqual(leftovers, [])


if __name__ == "__main__":
    unittest.main()
