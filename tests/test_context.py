"""
Tests for the workflow context: mentions, channel, inbox and documents.

Provider tests run against MemoryStorage; the file backend gets its own
cases for sharing one directory between providers.
"""

import json
import shutil
import tempfile
import threading
import unittest
from pathlib import Path

from agentworker.context import (
    ChannelEntry,
    build_context_tools,
    calculate_priority,
    create_file_context_provider,
    create_memory_context_provider,
    extract_mentions,
)
from agentworker.context.storage import FileStorage, MemoryStorage, normalize_key
from agentworker.context.types import MESSAGE_LENGTH_THRESHOLD
from agentworker.errors import InvalidArgumentError
from agentworker.target import is_valid_name

AGENTS = ["alice", "bob", "carol"]


class TestMentions(unittest.TestCase):
    """Test cases for mention extraction and priority."""

    def test_known_agents_only_in_order(self):
        self.assertEqual(
            extract_mentions("@bob @alice hi @bob @dave", AGENTS),
            ["bob", "alice"],
        )

    def test_email_like_text(self):
        self.assertEqual(extract_mentions("mail bob@example.com", AGENTS), [])
        self.assertEqual(extract_mentions("ping @alice, thanks", AGENTS), ["alice"])

    def test_names_with_dots(self):
        agents = ["qa.bot", "alice", "2nd-reviewer"]
        self.assertEqual(
            extract_mentions("@qa.bot run it. Thanks @alice. cc @2nd-reviewer", agents),
            ["qa.bot", "alice", "2nd-reviewer"],
        )
        self.assertTrue(is_valid_name("qa.bot"))

    def test_priority(self):
        def entry(content, mentions):
            return ChannelEntry("2026-01-01T00:00:00.000000Z", "bob", content, mentions)

        self.assertEqual(calculate_priority(entry("@alice hi", ["alice"])), "normal")
        self.assertEqual(calculate_priority(entry("@alice @carol", ["alice", "carol"])), "high")
        self.assertEqual(calculate_priority(entry("@alice URGENT fix", ["alice"])), "high")
        self.assertEqual(calculate_priority(entry("@alice I am blocked", ["alice"])), "high")


class TestChannel(unittest.TestCase):
    """Test cases for channel append and read."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)

    def test_append_records_mentions(self):
        entry = self.provider.append_channel("bob", "@alice please review")
        self.assertEqual(entry.from_, "bob")
        self.assertEqual(entry.mentions, ["alice"])
        self.assertTrue(entry.timestamp.endswith("Z"))

    def test_timestamps_strictly_increase(self):
        stamps = [self.provider.append_channel("bob", f"msg {i}").timestamp for i in range(50)]
        self.assertEqual(stamps, sorted(set(stamps)))

    def test_sender_required(self):
        with self.assertRaises(InvalidArgumentError):
            self.provider.append_channel("", "hello")

    def test_read_since_and_limit(self):
        first = self.provider.append_channel("bob", "one")
        self.provider.append_channel("bob", "two")
        self.provider.append_channel("bob", "three")

        since = self.provider.read_channel(since=first.timestamp)
        self.assertEqual([e.content for e in since], ["two", "three"])
        self.assertEqual([e.content for e in self.provider.read_channel(limit=1)], ["three"])

    def test_visibility(self):
        self.provider.append_channel("bob", "public")
        self.provider.append_channel("bob", "secret", to="alice")
        self.provider.append_channel("system", "debug output", kind="log")

        self.assertEqual(len(self.provider.read_channel()), 3)
        self.assertEqual([e.content for e in self.provider.read_channel(agent="alice")], ["public", "secret"])
        self.assertEqual([e.content for e in self.provider.read_channel(agent="bob")], ["public", "secret"])
        self.assertEqual([e.content for e in self.provider.read_channel(agent="carol")], ["public"])

    def test_entry_serialization_omits_unset_fields(self):
        entry = self.provider.append_channel("bob", "hi")
        self.assertEqual(set(entry.to_dict()), {"timestamp", "from", "content", "mentions"})
        dm = self.provider.append_channel("bob", "hi", to="alice")
        self.assertEqual(ChannelEntry.from_dict(dm.to_dict()), dm)


class TestInbox(unittest.TestCase):
    """Test cases for inbox derivation and acknowledgement."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)

    def test_inbox_contents(self):
        self.provider.append_channel("bob", "@alice review please")
        self.provider.append_channel("alice", "@alice note to self")
        self.provider.append_channel("bob", "general chatter")
        self.provider.append_channel("bob", "direct", to="alice")
        self.provider.append_channel("system", "@alice internal", kind="log")

        inbox = self.provider.get_inbox("alice")

        self.assertEqual([m.entry.content for m in inbox], ["@alice review please", "direct"])
        self.assertTrue(all(m.unread for m in inbox))

    def test_peek_does_not_move_cursor(self):
        self.provider.append_channel("bob", "@alice one")
        self.assertEqual(len(self.provider.peek_inbox("alice")), 1)
        self.assertEqual(len(self.provider.peek_inbox("alice")), 1)
        self.assertIsNone(self.provider.get_read_cursor("alice"))

    def test_ack_hides_older_messages(self):
        first = self.provider.append_channel("bob", "@alice one")
        self.provider.append_channel("bob", "@alice two")

        self.assertEqual(self.provider.ack_inbox("alice", first.timestamp), first.timestamp)

        self.assertEqual([m.entry.content for m in self.provider.get_inbox("alice")], ["@alice two"])
        self.provider.append_channel("carol", "@alice three")
        self.assertEqual(len(self.provider.get_inbox("alice")), 2)

    def test_ack_never_moves_backwards(self):
        first = self.provider.append_channel("bob", "@alice one")
        second = self.provider.append_channel("bob", "@alice two")
        self.provider.ack_inbox("alice", second.timestamp)

        stored = self.provider.ack_inbox("alice", first.timestamp)

        self.assertEqual(stored, second.timestamp)
        self.assertEqual(self.provider.get_inbox("alice"), [])

    def test_cursors_are_per_agent(self):
        entry = self.provider.append_channel("carol", "@alice @bob sync")
        self.provider.ack_inbox("alice", entry.timestamp)

        self.assertEqual(self.provider.get_inbox("alice"), [])
        bob_inbox = self.provider.get_inbox("bob")
        self.assertEqual(len(bob_inbox), 1)
        self.assertEqual(bob_inbox[0].priority, "high")

    def test_ack_requires_arguments(self):
        with self.assertRaises(InvalidArgumentError):
            self.provider.ack_inbox("", "2026-01-01T00:00:00.000000Z")
        with self.assertRaises(InvalidArgumentError):
            self.provider.ack_inbox("alice", "")

    def test_corrupt_inbox_state_reads_as_empty(self):
        self.provider.append_channel("bob", "@alice one")
        self.provider.storage.write("_state/inbox.json", "{not json")
        self.assertEqual(len(self.provider.get_inbox("alice")), 1)


class TestDocuments(unittest.TestCase):
    """Test cases for shared documents."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)

    def test_default_document(self):
        self.assertEqual(self.provider.read_document(), "")
        self.provider.write_document("# Notes\n")
        self.provider.append_document("- item\n")
        self.assertEqual(self.provider.read_document("notes.md"), "# Notes\n- item\n")

    def test_list_only_markdown(self):
        self.provider.write_document("plan", "plan.md")
        self.provider.write_document("data", "data.json")
        self.provider.write_document("nested", "design/api.md")
        self.assertEqual(self.provider.list_documents(), ["design/api.md", "plan.md"])

    def test_create_document(self):
        self.provider.create_document("plan.md", "v1")
        self.assertEqual(self.provider.read_document("plan.md"), "v1")
        with self.assertRaises(InvalidArgumentError):
            self.provider.create_document("plan.md")

    def test_documents_do_not_touch_channel(self):
        self.provider.write_document("@alice look here")
        self.assertEqual(self.provider.read_channel(), [])
        self.assertEqual(self.provider.get_inbox("alice"), [])

    def test_invalid_names(self):
        for name in ["../escape.md", "/etc/passwd"]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidArgumentError):
                    self.provider.read_document(name)


class TestStorage(unittest.TestCase):
    """Test cases for storage backends."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_normalize_key(self):
        self.assertEqual(normalize_key("documents/./notes.md"), "documents/notes.md")
        for key in ["", "/abs", "a/../b"]:
            with self.assertRaises(InvalidArgumentError):
                normalize_key(key)

    def test_memory_update(self):
        storage = MemoryStorage()
        storage.update("counter", lambda current: str(int(current or 0) + 1))
        self.assertEqual(storage.update("counter", lambda current: str(int(current or 0) + 1)), "2")

    def test_file_storage_operations(self):
        storage = FileStorage(Path(self.temp_dir))
        storage.write("documents/notes.md", "a")
        storage.append("documents/notes.md", "b")
        storage.append("channel.jsonl", "{}\n")

        self.assertEqual(storage.read("documents/notes.md"), "ab")
        self.assertIsNone(storage.read("missing.md"))
        self.assertTrue(storage.exists("channel.jsonl"))
        self.assertEqual(storage.list("documents/"), ["notes.md"])

        storage.delete("documents/notes.md")
        self.assertFalse(storage.exists("documents/notes.md"))
        storage.delete("documents/notes.md")

    def test_providers_share_directory(self):
        context_dir = Path(self.temp_dir) / ".workflow" / "review" / "main"
        alice_side = create_file_context_provider(context_dir, AGENTS)
        bob_side = create_file_context_provider(context_dir, AGENTS)

        bob_side.append_channel("bob", "@alice ready")
        inbox = alice_side.get_inbox("alice")
        self.assertEqual(len(inbox), 1)

        alice_side.ack_inbox("alice", inbox[0].entry.timestamp)
        later = alice_side.append_channel("alice", "@bob thanks")

        self.assertEqual(bob_side.get_inbox("alice"), [])
        self.assertGreater(later.timestamp, inbox[0].entry.timestamp)

        state = json.loads((context_dir / "_state" / "inbox.json").read_text())
        self.assertEqual(state["readCursors"]["alice"], inbox[0].entry.timestamp)
        lines = (context_dir / "channel.jsonl").read_text().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertEqual(json.loads(lines[0])["from"], "bob")

    def test_malformed_channel_lines_are_skipped(self):
        provider = create_file_context_provider(Path(self.temp_dir), AGENTS)
        provider.append_channel("bob", "first")
        with open(Path(self.temp_dir) / "channel.jsonl", "a") as handle:
            handle.write("garbage\n")
        provider.append_channel("bob", "second")

        self.assertEqual([e.content for e in provider.read_channel()], ["first", "second"])


def _write_channel(provider, *stamps_and_text):
    lines = [
        json.dumps({"timestamp": stamp, "from": "bob", "content": text, "mentions": ["alice"]})
        for stamp, text in stamps_and_text
    ]
    provider.storage.write("channel.jsonl", "\n".join(lines) + "\n")


class TestTimestampQueries(unittest.TestCase):
    """Test cases for caller-supplied timestamps."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)
        _write_channel(
            self.provider,
            ("2026-01-01T09:59:59.900000Z", "before"),
            ("2026-01-01T10:00:00.500000Z", "same second"),
            ("2026-01-01T10:00:01.000000Z", "after"),
        )

    def test_since_without_fraction(self):
        entries = self.provider.read_channel(since="2026-01-01T10:00:00Z")
        self.assertEqual([e.content for e in entries], ["same second", "after"])

    def test_since_with_offset(self):
        entries = self.provider.read_channel(since="2026-01-01T12:00:00.500000+02:00")
        self.assertEqual([e.content for e in entries], ["after"])

    def test_invalid_since(self):
        with self.assertRaises(InvalidArgumentError):
            self.provider.read_channel(since="yesterday")

    def test_ack_normalizes_until(self):
        stored = self.provider.ack_inbox("alice", "2026-01-01T10:00:00Z")
        self.assertEqual(stored, "2026-01-01T10:00:00.000000Z")
        self.assertEqual(
            [m.entry.content for m in self.provider.get_inbox("alice")], ["same second", "after"]
        )

    def test_newest_inbox_timestamp_ignores_file_order(self):
        _write_channel(
            self.provider,
            ("2026-01-01T10:00:02.000000Z", "newest"),
            ("2026-01-01T10:00:01.000000Z", "older, written later"),
        )
        self.assertEqual(self.provider.newest_inbox_timestamp("alice"), "2026-01-01T10:00:02.000000Z")
        self.assertIsNone(self.provider.newest_inbox_timestamp("carol"))


class TestSeenCursor(unittest.TestCase):
    """Test cases for marking inbox messages seen."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)

    def test_seen_flags_without_removing(self):
        first = self.provider.append_channel("bob", "@alice one")
        self.provider.mark_inbox_seen("alice", first.timestamp)
        self.provider.append_channel("bob", "@alice two")

        inbox = self.provider.get_inbox("alice")

        self.assertEqual([(m.entry.content, m.seen) for m in inbox], [("@alice one", True), ("@alice two", False)])
        self.assertIsNone(self.provider.get_read_cursor("alice"))
        self.assertTrue(inbox[0].to_dict()["seen"])

    def test_seen_and_read_cursors_are_independent(self):
        first = self.provider.append_channel("bob", "@alice one")
        second = self.provider.append_channel("bob", "@alice two")
        self.provider.mark_inbox_seen("alice", second.timestamp)
        self.provider.ack_inbox("alice", first.timestamp)

        self.assertEqual(self.provider.mark_inbox_seen("alice", first.timestamp), second.timestamp)
        inbox = self.provider.get_inbox("alice")
        self.assertEqual([m.entry.content for m in inbox], ["@alice two"])
        self.assertTrue(inbox[0].seen)

        state = json.loads(self.provider.storage.read("_state/inbox.json"))
        self.assertEqual(state["readCursors"], {"alice": first.timestamp})
        self.assertEqual(state["seenCursors"], {"alice": second.timestamp})


class TestResources(unittest.TestCase):
    """Test cases for resources and long channel messages."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)

    def test_create_and_read(self):
        resource = self.provider.create_resource('{"a": 1}', "bob", "json")

        self.assertTrue(resource.id.startswith("res_"))
        self.assertEqual(resource.ref, f"resource:{resource.id}")
        self.assertEqual(self.provider.read_resource(resource.id), '{"a": 1}')
        self.assertEqual(self.provider.read_resource(resource.ref), '{"a": 1}')
        self.assertTrue(self.provider.storage.exists(f"resources/{resource.id}.json"))

    def test_missing_and_invalid_ids(self):
        self.assertIsNone(self.provider.read_resource("res_doesnotexist"))
        for bad in ["../documents/notes", "res_a/b", ""]:
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidArgumentError):
                    self.provider.read_resource(bad)
        with self.assertRaises(InvalidArgumentError):
            self.provider.create_resource("x", "bob", "binary")

    def test_short_message_goes_straight_to_channel(self):
        entry = self.provider.smart_send("bob", "@alice short")
        self.assertEqual(entry.content, "@alice short")
        self.assertEqual(len(self.provider.read_channel()), 1)

    def test_long_message_becomes_resource(self):
        body = "@alice @carol " + "x" * (MESSAGE_LENGTH_THRESHOLD + 10)

        entry = self.provider.smart_send("bob", body)

        self.assertEqual(entry.mentions, ["alice", "carol"])
        self.assertTrue(entry.content.startswith("@alice @carol [Long content stored as resource]"))
        resource_id = entry.content.split('resource_read("')[1].split('")')[0]
        self.assertEqual(self.provider.read_resource(resource_id), body)

        self.assertEqual(len(self.provider.read_channel()), 2)
        self.assertEqual(self.provider.read_channel(agent="alice"), [entry])
        self.assertEqual([m.entry for m in self.provider.get_inbox("alice")], [entry])


class TestConcurrentWriters(unittest.TestCase):
    """Test cases for several providers appending to one channel file."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_interleaved_appends_stay_ordered(self):
        providers = [create_file_context_provider(Path(self.temp_dir), AGENTS) for _ in range(4)]

        def write(provider, sender):
            for i in range(25):
                provider.append_channel(sender, f"@alice {sender} {i}")

        threads = [
            threading.Thread(target=write, args=(provider, sender))
            for provider, sender in zip(providers, ["bob", "carol", "dave", "erin"])
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stamps = [e.timestamp for e in providers[0].read_channel()]
        self.assertEqual(len(stamps), 100)
        self.assertEqual(stamps, sorted(set(stamps)))

    def test_writer_with_slow_clock_stamps_after_newest(self):
        ahead = create_file_context_provider(Path(self.temp_dir), AGENTS)
        behind = create_file_context_provider(Path(self.temp_dir), AGENTS)
        _write_channel(ahead, ("2999-01-01T00:00:00.000000Z", "@alice from the future"))

        entry = behind.append_channel("carol", "@alice now")

        self.assertEqual(entry.timestamp, "2999-01-01T00:00:00.000001Z")
        ahead.ack_inbox("alice", ahead.newest_inbox_timestamp("alice"))
        self.assertEqual(behind.get_inbox("alice"), [])

    def test_append_with_sees_previous_writer(self):
        storage = FileStorage(Path(self.temp_dir))
        storage.append_with("log.txt", lambda current: "1\n")
        added = storage.append_with("log.txt", lambda current: f"{len(current.splitlines()) + 1}\n")

        self.assertEqual(added, "2\n")
        self.assertEqual(storage.read("log.txt"), "1\n2\n")


class TestContextTools(unittest.TestCase):
    """Test cases for the tools given to workflow agents."""

    def setUp(self):
        self.provider = create_memory_context_provider(AGENTS)
        self.tools = {t.name: t for t in build_context_tools(self.provider, "alice")}

    def test_tool_names(self):
        self.assertEqual(
            sorted(self.tools),
            sorted(
                [
                    "channel_send",
                    "channel_read",
                    "inbox_check",
                    "inbox_ack",
                    "document_read",
                    "document_write",
                    "document_append",
                    "resource_create",
                    "resource_read",
                ]
            ),
        )

    def test_channel_send_acts_as_agent(self):
        result = self.tools["channel_send"].execute({"message": "@bob done"})
        self.assertEqual(result["status"], "sent")
        self.assertEqual(result["mentions"], ["bob"])
        self.assertEqual(self.provider.read_channel()[0].from_, "alice")

    def test_inbox_flow(self):
        self.assertEqual(self.tools["inbox_ack"].execute({}), {"status": "empty"})
        self.provider.append_channel("bob", "@alice one")
        self.provider.append_channel("bob", "@alice two")

        self.assertEqual(len(self.tools["inbox_check"].execute({})["messages"]), 2)
        acked = self.tools["inbox_ack"].execute({})
        self.assertEqual(acked["status"], "acknowledged")
        self.assertEqual(self.tools["inbox_check"].execute({})["messages"], [])

    def test_documents(self):
        self.tools["document_write"].execute({"content": "plan"})
        self.tools["document_append"].execute({"content": "!"})
        self.assertEqual(self.tools["document_read"].execute({}), {"content": "plan!"})

    def test_inbox_check_marks_seen(self):
        self.provider.append_channel("bob", "@alice one")

        first = self.tools["inbox_check"].execute({})["messages"]
        second = self.tools["inbox_check"].execute({})["messages"]

        self.assertFalse(first[0]["seen"])
        self.assertTrue(second[0]["seen"])
        self.assertIsNone(self.provider.get_read_cursor("alice"))

    def test_resource_tools(self):
        created = self.tools["resource_create"].execute({"content": "long report", "type": "markdown"})
        self.assertEqual(created["ref"], f"resource:{created['id']}")

        self.assertEqual(self.tools["resource_read"].execute({"id": created["id"]}), {"content": "long report"})
        self.assertEqual(
            self.tools["resource_read"].execute({"id": "res_missing"}),
            {"error": "Resource not found: res_missing"},
        )

    def test_long_channel_send_uses_resource(self):
        result = self.tools["channel_send"].execute({"message": "@bob " + "y" * (MESSAGE_LENGTH_THRESHOLD + 1)})

        self.assertEqual(result["mentions"], ["bob"])
        self.assertEqual(len(self.provider.get_inbox("bob")), 1)
        self.assertIn("resource_read", self.provider.get_inbox("bob")[0].entry.content)


if __name__ == "__main__":
    unittest.main()
