import dataclasses
import unittest

from fakes import ALICE, BOT, raw_message, sync_body
from hellobot.events import Event, SyncBatch, parse_sync_response


class ParseSyncResponseTests(unittest.TestCase):
    def test_timeline_order_is_kept_per_room(self):
        batch = parse_sync_response(
            sync_body(
                "s1",
                {
                    "!a:x": [raw_message("$a1"), raw_message("$a2")],
                    "!b:x": [raw_message("$b1")],
                },
            )
        )

        self.assertEqual(batch.next_batch, "s1")
        self.assertEqual([e.event_id for e in batch.timeline], ["$a1", "$a2", "$b1"])
        self.assertEqual([e.room_id for e in batch.timeline], ["!a:x", "!a:x", "!b:x"])
        self.assertEqual(len(batch), 3)

    def test_invites_follow_timeline_with_synthetic_ids(self):
        batch = parse_sync_response(
            sync_body("s1", {"!a:x": [raw_message("$a1")]}, invites={"!new:x": ALICE})
        )

        self.assertEqual(len(batch.invites), 1)
        invite = batch.invites[0]
        self.assertEqual(invite.event_id, f"invite:!new:x:{BOT}:s1")
        self.assertEqual(invite.membership, "invite")
        self.assertEqual(invite.state_key, BOT)
        self.assertEqual(invite.sender, ALICE)
        self.assertEqual([e.event_id for e in batch.events][0], "$a1")

    def test_repeated_invites_get_distinct_ids(self):
        first = parse_sync_response(sync_body("s1", invites={"!r:x": ALICE}))
        second = parse_sync_response(sync_body("s2", invites={"!r:x": ALICE}))

        self.assertNotEqual(first.invites[0].event_id, second.invites[0].event_id)

    def test_entries_without_event_id_are_skipped(self):
        body = sync_body("s1", {"!a:x": [raw_message("$a1")]})
        body["rooms"]["join"]["!a:x"]["timeline"]["events"].insert(0, {"type": "m.room.message"})
        body["rooms"]["join"]["!a:x"]["timeline"]["events"].append("garbage")

        batch = parse_sync_response(body)

        self.assertEqual([e.event_id for e in batch.timeline], ["$a1"])

    def test_empty_response(self):
        batch = parse_sync_response({})
        self.assertEqual(batch, SyncBatch())
        self.assertEqual(len(batch), 0)
        self.assertIsNone(batch.next_batch)


class EventTests(unittest.TestCase):
    def test_events_are_immutable(self):
        event = Event.from_raw("!a:x", raw_message("$1", body="!hello"))

        with self.assertRaises(dataclasses.FrozenInstanceError):
            event.sender = BOT
        with self.assertRaises(TypeError):
            event.content["body"] = "changed"
        self.assertEqual(event.body, "!hello")
        self.assertEqual(event.msgtype, "m.text")

    def test_events_are_hashable(self):
        first = Event.from_raw("!a:x", raw_message("$1"))
        second = Event.from_raw("!a:x", raw_message("$1"))
        self.assertEqual(len({first, second}), 1)

    def test_non_string_fields_read_as_none(self):
        event = Event(
            event_id="$1", room_id="!a:x", sender=ALICE, type="m.room.message",
            content={"body": 5, "msgtype": None},
        )
        self.assertIsNone(event.body)
        self.assertIsNone(event.msgtype)


if __name__ == "__main__":
    unittest.main()
