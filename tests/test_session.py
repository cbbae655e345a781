"""
Tests for core/session.py - conversation state, usage and approvals.

The mock completer stands in for the model so every flow runs offline.
"""

import unittest

from agentworker.core.completer import Completer
from agentworker.core.session import AgentSession
from agentworker.core.types import NO_MOCK_RESULT, SessionConfig, ToolDefinition
from agentworker.core.tools import constant_tool
from agentworker.errors import AlreadyResolvedError, NotFoundError, UpstreamFailureError
from agentworker.providers.mock import MockCompleter, MockReply


def _deploy_tool(needs_approval=True) -> ToolDefinition:
    return ToolDefinition(
        name="deploy",
        description="Deploy a branch",
        parameters={"type": "object", "properties": {"branch": {"type": "string"}}},
        execute=constant_tool({"ok": True}),
        needs_approval=needs_approval,
    )


def _tool_round(name="deploy", arguments=None, text="waiting") -> MockReply:
    return MockReply(text=text, tool_calls=[{"name": name, "arguments": arguments or {"branch": "main"}}])


class _HoldThenFailCompleter(Completer):
    """Requests every tool once, then fails like an unreachable model."""

    async def complete(self, system, messages, tools, max_tokens, max_steps):
        for tool in tools:
            await tool({"branch": "staging"}, "call_1")
        raise UpstreamFailureError("model down")


class TestAgentSession(unittest.IsolatedAsyncioTestCase):
    """Test cases for AgentSession."""

    def _session(self, completer=None, tools=None) -> AgentSession:
        config = SessionConfig(model="mock", system="You are terse.", tools=tools or [])
        return AgentSession(config, completer=completer or MockCompleter())

    async def test_send_appends_user_and_assistant(self):
        session = self._session()
        response = await session.send("hi")

        self.assertEqual(response.content, "[mock] Processed: hi")
        self.assertEqual(
            session.history(),
            [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "[mock] Processed: hi"},
            ],
        )
        self.assertGreaterEqual(response.latency, 0)

    async def test_usage_accumulates_across_sends(self):
        completer = MockCompleter(
            [
                MockReply(text="one", input_tokens=10, output_tokens=2),
                MockReply(text="two", input_tokens=20, output_tokens=3),
            ]
        )
        session = self._session(completer)

        first = await session.send("a")
        second = await session.send("b")

        self.assertEqual(first.usage.to_dict(), {"input": 10, "output": 2, "total": 12})
        self.assertEqual(second.usage.total, 23)
        stats = session.stats()
        self.assertEqual(stats["message_count"], 4)
        self.assertEqual(stats["usage"], {"input": 30, "output": 5, "total": 35})

    async def test_failed_send_rolls_back_user_message(self):
        session = self._session(MockCompleter(error=UpstreamFailureError("model down")))

        with self.assertRaises(UpstreamFailureError):
            await session.send("hello")

        self.assertEqual(session.history(), [])
        self.assertEqual(session.stats()["usage"]["total"], 0)

    async def test_failed_send_drops_approvals_held_in_that_turn(self):
        session = self._session(MockCompleter([_tool_round()]), tools=[_deploy_tool()])
        earlier = (await session.send("deploy main", auto_approve=False)).pending_approvals[0]
        session._completer = _HoldThenFailCompleter()

        with self.assertRaises(UpstreamFailureError):
            await session.send("deploy staging", auto_approve=False)

        self.assertEqual([p.id for p in session.get_pending_approvals()], [earlier.id])
        self.assertEqual(len(session.history()), 2)

    async def test_raising_tool_is_reported_to_the_model(self):
        def crash(arguments):
            raise RuntimeError("tool crashed")

        flaky = ToolDefinition("flaky", "Sometimes fails", execute=crash)
        reply = MockReply(
            text="checking",
            tool_calls=[
                {"name": "deploy", "arguments": {"branch": "main"}},
                {"name": "flaky", "arguments": {}},
            ],
        )
        completer = MockCompleter([reply, MockReply(text="flaky failed, deploy is waiting")])
        session = self._session(completer, tools=[_deploy_tool(), flaky])

        response = await session.send("deploy and check", auto_approve=False)

        self.assertEqual(response.content, "flaky failed, deploy is waiting")
        self.assertEqual(response.tool_calls[0].result, {"error": "tool crashed"})
        self.assertEqual([p.tool_name for p in response.pending_approvals], ["deploy"])
        self.assertEqual(len(session.history()), 2)

    async def test_completer_receives_history_and_tools(self):
        completer = MockCompleter()
        session = self._session(completer, tools=[_deploy_tool()])
        await session.send("first")
        await session.send("second")

        last_call = completer.calls[-1]
        self.assertEqual(last_call["system"], "You are terse.")
        self.assertEqual([m["content"] for m in last_call["messages"]][-1], "second")
        self.assertEqual(len(last_call["messages"]), 3)
        self.assertEqual(last_call["tools"], ["deploy"])

    async def test_auto_approve_executes_gated_tool(self):
        session = self._session(MockCompleter([_tool_round(text="done")]), tools=[_deploy_tool()])
        response = await session.send("deploy main")

        self.assertEqual(response.content, "done")
        self.assertEqual(len(response.tool_calls), 1)
        self.assertEqual(response.tool_calls[0].name, "deploy")
        self.assertEqual(response.tool_calls[0].result, {"ok": True})
        self.assertEqual(response.pending_approvals, [])

    async def test_gated_tool_waits_for_approval(self):
        session = self._session(MockCompleter([_tool_round()]), tools=[_deploy_tool()])
        response = await session.send("deploy main", auto_approve=False)

        self.assertEqual(response.tool_calls, [])
        self.assertEqual(len(response.pending_approvals), 1)
        approval = response.pending_approvals[0]
        self.assertEqual(approval.tool_name, "deploy")
        self.assertEqual(approval.arguments, {"branch": "main"})

        result = await session.approve(approval.id)
        self.assertEqual(result, {"ok": True})
        self.assertEqual(session.get_pending_approvals(), [])

        with self.assertRaises(AlreadyResolvedError):
            await session.approve(approval.id)
        with self.assertRaises(AlreadyResolvedError):
            session.deny(approval.id)

    async def test_deny_records_reason(self):
        session = self._session(MockCompleter([_tool_round()]), tools=[_deploy_tool()])
        response = await session.send("deploy", auto_approve=False)
        approval_id = response.pending_approvals[0].id

        session.deny(approval_id, "not on a friday")

        self.assertEqual(session.get_pending_approvals(), [])
        saved = session.get_state().pending_approvals[0]
        self.assertEqual(saved.status.value, "denied")
        self.assertEqual(saved.deny_reason, "not on a friday")

    async def test_unknown_approval_raises_not_found(self):
        session = self._session()
        with self.assertRaises(NotFoundError):
            await session.approve("missing")
        with self.assertRaises(NotFoundError):
            session.deny("missing")

    async def test_approval_predicate_uses_arguments(self):
        tool = ToolDefinition(
            name="transfer",
            description="Move money",
            execute=constant_tool({"done": True}),
            needs_approval=lambda args: args.get("amount", 0) > 100,
        )
        completer = MockCompleter(
            [
                _tool_round("transfer", {"amount": 5}),
                MockReply(text="small"),
                _tool_round("transfer", {"amount": 500}),
            ]
        )
        session = self._session(completer, tools=[tool])

        small = await session.send("send 5", auto_approve=False)
        self.assertEqual(len(small.tool_calls), 1)
        self.assertEqual(small.pending_approvals, [])

        large = await session.send("send 500", auto_approve=False)
        self.assertEqual(large.tool_calls, [])
        self.assertEqual(len(large.pending_approvals), 1)

    async def test_tool_without_execute_returns_placeholder(self):
        tool = ToolDefinition(name="lookup", description="Lookup")
        session = self._session(MockCompleter([_tool_round("lookup", {"q": "x"})]), tools=[tool])

        response = await session.send("look it up")

        self.assertEqual(response.tool_calls[0].result, NO_MOCK_RESULT)

    async def test_set_mock_response(self):
        tool = ToolDefinition(name="lookup", description="Lookup")
        session = self._session(MockCompleter([_tool_round("lookup", {})]), tools=[tool])
        session.set_mock_response("lookup", {"answer": 42})

        response = await session.send("?")

        self.assertEqual(response.tool_calls[0].result, {"answer": 42})
        with self.assertRaises(NotFoundError):
            session.set_mock_response("missing", 1)

    async def test_clear_keeps_tools_and_system(self):
        session = self._session(tools=[_deploy_tool()])
        await session.send("hi")

        session.clear()

        self.assertEqual(session.history(), [])
        self.assertEqual(session.stats(), {"message_count": 0, "usage": {"input": 0, "output": 0, "total": 0}})
        self.assertEqual([t["name"] for t in session.get_tools()], ["deploy"])
        self.assertEqual(session.system, "You are terse.")

    async def test_restore_from_state(self):
        session = self._session()
        await session.send("remember me")
        state = session.get_state()

        restored = AgentSession(
            SessionConfig(model="mock", system="You are terse."),
            restore=state,
            completer=MockCompleter(),
        )

        self.assertEqual(restored.id, session.id)
        self.assertEqual(restored.created_at, session.created_at)
        self.assertEqual(restored.history(), session.history())
        self.assertEqual(restored.stats(), session.stats())

    async def test_export_transcript(self):
        session = self._session()
        await session.send("hi")

        transcript = session.export().to_dict()

        self.assertEqual(transcript["session_id"], session.id)
        self.assertEqual(transcript["model"], "mock")
        self.assertEqual(transcript["system"], "You are terse.")
        self.assertEqual(len(transcript["messages"]), 2)

    def test_explicit_session_id(self):
        session = AgentSession(SessionConfig(model="mock", system=""), session_id="fixed-id")
        self.assertEqual(session.id, "fixed-id")


if __name__ == "__main__":
    unittest.main()
