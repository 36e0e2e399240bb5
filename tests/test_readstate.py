import unittest

from marketsync.readstate import Attachment, Message, Profile, ProfileCache, ReadStateTracker

SELF = 1


def _incoming(message_id, contact_id=7, ts_ms=1000, is_read=False, content="hi"):
    return Message(id=message_id, sender_id=contact_id, receiver_id=SELF, content=content, ts_ms=ts_ms, is_read=is_read)


def _outgoing(message_id, contact_id=7, ts_ms=1000, content="hello"):
    return Message(id=message_id, sender_id=SELF, receiver_id=contact_id, content=content, ts_ms=ts_ms, is_read=True)


class MessagePayloadTests(unittest.TestCase):
    def test_reads_collaborator_shape(self):
        message = Message.from_payload(
            {
                "id": "41",
                "senderId": 7,
                "receiverId": "1",
                "content": "[auction: Lamp](/auction/2)",
                "sentAt": "2025-01-01T00:00:00Z",
                "isRead": False,
                "fileUrl": "/uploads/a.png",
                "fileType": "image/png",
            }
        )

        self.assertEqual(message.id, 41)
        self.assertEqual(message.receiver_id, 1)
        self.assertEqual(message.ts_ms, 1735689600000)
        self.assertEqual(message.attachments, (Attachment("/uploads/a.png", "image/png"),))
        self.assertEqual(message.decoded().reference.title, "Lamp")

    def test_string_read_flags(self):
        for flag, expected in (("false", False), ("False", False), ("0", False), ("true", True), ("1", True), (1, True), (None, False)):
            with self.subTest(flag=flag):
                message = Message.from_payload({"id": 1, "senderId": 7, "receiverId": 1, "isRead": flag})

                self.assertIs(message.is_read, expected)

    def test_string_false_read_flag_counts_as_unread(self):
        tracker = ReadStateTracker(SELF)

        tracker.record_incoming(Message.from_payload({"id": 5, "senderId": 7, "receiverId": 1, "isRead": "false"}))

        self.assertEqual(tracker.total_unread(), 1)

    def test_rejects_payload_without_ids(self):
        self.assertIsNone(Message.from_payload({"id": 1, "content": "x"}))
        self.assertIsNone(Message.from_payload("text"))


class ReadStateTrackerTests(unittest.TestCase):
    def setUp(self):
        self.tracker = ReadStateTracker(SELF)

    def test_duplicate_delivery_counts_once(self):
        polled = _incoming(10)
        pushed = _incoming(10)

        self.assertTrue(self.tracker.record_incoming(polled))
        self.assertFalse(self.tracker.record_incoming(pushed))

        self.assertEqual(self.tracker.unread_count_for(7), 1)
        self.assertEqual(len(self.tracker.timeline(7)), 1)

    def test_mark_read_is_idempotent(self):
        self.tracker.record_incoming(_incoming(10))
        self.tracker.record_incoming(_incoming(11, ts_ms=2000))

        self.assertTrue(self.tracker.mark_read(10))
        self.assertFalse(self.tracker.mark_read(10))
        self.assertFalse(self.tracker.mark_read("10"))

        self.assertEqual(self.tracker.unread_count_for(7), 1)
        self.assertTrue(self.tracker.is_processed(10))
        self.assertTrue(self.tracker.message(10).is_read)

    def test_redelivered_unread_copy_after_mark_read_stays_read(self):
        self.tracker.record_incoming(_incoming(10))
        self.tracker.mark_read(10)

        self.tracker.record_incoming(_incoming(10))

        self.assertEqual(self.tracker.unread_count_for(7), 0)
        self.assertTrue(self.tracker.message(10).is_read)

    def test_server_read_copy_decrements_unread(self):
        self.tracker.record_incoming(_incoming(10))

        self.assertTrue(self.tracker.record_incoming(_incoming(10, is_read=True)))

        self.assertEqual(self.tracker.unread_count_for(7), 0)
        self.assertFalse(self.tracker.mark_read(10))

    def test_unread_count_is_never_negative(self):
        self.tracker.record_incoming(_incoming(10, is_read=True))

        self.tracker.mark_read(10)
        self.tracker.mark_read(10)

        self.assertEqual(self.tracker.unread_count_for(7), 0)
        self.assertEqual(self.tracker.total_unread(), 0)

    def test_unknown_message_id_is_ignored(self):
        self.assertFalse(self.tracker.mark_read(999))
        self.assertFalse(self.tracker.is_processed(999))

        self.tracker.record_incoming(_incoming(999))
        self.assertEqual(self.tracker.unread_count_for(7), 1)

    def test_last_message_follows_timestamp_in_either_order(self):
        older = _incoming(1, ts_ms=1000, content="older")
        newer = _incoming(2, ts_ms=2000, content="newer")

        forward = ReadStateTracker(SELF)
        forward.record_many([older, newer])
        backward = ReadStateTracker(SELF)
        backward.record_many([newer, older])

        self.assertEqual(forward.contact(7).last_message.content, "newer")
        self.assertEqual(backward.contact(7).last_message.content, "newer")
        self.assertEqual(backward.contact(7).last_message_time_ms, 2000)

    def test_self_sent_messages_update_last_message_but_not_unread(self):
        self.tracker.record_incoming(_incoming(1, ts_ms=1000))
        self.tracker.record_incoming(_outgoing(2, ts_ms=2000, content="reply"))

        contact = self.tracker.contact(7)
        self.assertEqual(contact.last_message.content, "reply")
        self.assertEqual(contact.unread_count, 1)

    def test_messages_not_involving_self_are_ignored(self):
        stray = Message(id=5, sender_id=3, receiver_id=4, content="x", ts_ms=1)

        self.assertFalse(self.tracker.record_incoming(stray))
        self.assertEqual(self.tracker.contacts(), [])

    def test_mark_conversation_read_returns_flipped_ids(self):
        self.tracker.record_many([_incoming(1, ts_ms=1), _incoming(2, ts_ms=2), _incoming(3, contact_id=8, ts_ms=3)])

        flipped = self.tracker.mark_conversation_read(7)

        self.assertEqual(flipped, [1, 2])
        self.assertEqual(self.tracker.mark_conversation_read(7), [])
        self.assertEqual(self.tracker.total_unread(), 1)

    def test_contacts_are_ordered_by_recency(self):
        self.tracker.record_many([_incoming(1, contact_id=7, ts_ms=100), _incoming(2, contact_id=8, ts_ms=300), _incoming(3, contact_id=9, ts_ms=200)])

        self.assertEqual([contact.contact_id for contact in self.tracker.contacts()], [8, 9, 7])
        self.assertEqual([message.id for message in self.tracker.timeline(7)], [1])

    def test_string_and_numeric_ids_are_the_same_contact(self):
        self.tracker.record_incoming(Message.from_payload({"id": 1, "senderId": "7", "receiverId": 1, "content": "a"}))

        self.assertEqual(self.tracker.unread_count_for("7"), 1)
        self.assertEqual(self.tracker.unread_ids_for(7), [1])

    def test_requires_self_id(self):
        with self.assertRaises(ValueError):
            ReadStateTracker("")


class ProfileCacheTests(unittest.TestCase):
    def test_contacts_are_decorated_from_the_cache(self):
        profiles = ProfileCache()
        tracker = ReadStateTracker(SELF, profiles)
        tracker.record_incoming(_incoming(1))

        profiles.put(Profile(user_id=7, name="Lina", avatar="/a/7.png"))

        contact = tracker.contact(7)
        self.assertEqual(contact.name, "Lina")
        self.assertEqual(contact.avatar, "/a/7.png")

    def test_opening_a_conversation_invalidates_the_profile(self):
        profiles = ProfileCache()
        tracker = ReadStateTracker(SELF, profiles)
        profiles.put(Profile(user_id=7, name="Lina"))
        profiles.put(Profile(user_id=8, name="Omar"))

        tracker.open_conversation("7")

        self.assertNotIn(7, profiles)
        self.assertIn(8, profiles)
        self.assertEqual(tracker.active_contact, 7)
        self.assertEqual(profiles.missing([7, 8]), [7])

        tracker.close_conversation()
        self.assertIsNone(tracker.active_contact)


if __name__ == "__main__":
    unittest.main()
