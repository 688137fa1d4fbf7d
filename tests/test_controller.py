"""Tests for the controller loop. The model is a scripted async callable."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from llm_controller.actions import JSON_END_MARKER, JSON_START_MARKER
from llm_controller.config import ControllerConfig
from llm_controller.controller import (
    ControllerLoop,
    ControllerState,
    FailureCause,
    build_descriptor,
    compact_history,
    resolve_delivery,
)
from llm_controller.errors import ControllerStateError, StoreWriteError
from llm_controller.output_store import OutputStore, encoded_size
from llm_controller.tools import AVAILABLE_OPERATIONS, ToolRegistry, ToolResult, register_traversal_tools
from llm_controller.traversal import TraversalSuite


def _reply(**fields: Any) -> str:
    return f"{JSON_START_MARKER}\n{json.dumps(fields)}\n{JSON_END_MARKER}"


def _tool_call(tool: str, args: dict | None = None, **extra: Any) -> str:
    return _reply(action="next_step", type="tool", tool=tool, args=json.dumps(args or {}), **extra)


class ScriptedModel:
    """Returns queued replies in order and records every call."""

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[list[dict[str, Any]], dict[str, Any] | None]] = []

    async def __call__(self, messages, response_format):
        self.calls.append((messages, response_format))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _tool_results(loop: ControllerLoop, tool_name: str) -> list[dict[str, Any]]:
    prefix = f"TOOL RESULT {tool_name}:\n"
    return [
        json.loads(m["content"][len(prefix):])
        for m in loop.history
        if m["role"] == "user" and m["content"].startswith(prefix)
    ]


def _orders() -> list[dict[str, Any]]:
    records = [{"id": n, "pad": "x" * 21} for n in range(500)]
    records[0]["pad"] += "x" * (20480 - encoded_size(records))
    return records


@pytest.fixture()
def config() -> ControllerConfig:
    return ControllerConfig(model="anthropic/claude-sonnet-4-5", max_iterations=8)


@pytest.fixture()
def store(tmp_path: Path):
    s = OutputStore(tmp_path / "outputs")
    yield s
    s.close()


@pytest.fixture()
def registry(store: OutputStore) -> ToolRegistry:
    registry = ToolRegistry()
    register_traversal_tools(registry, TraversalSuite(store))

    def echo(text: str) -> dict:
        """Echo the text back."""
        return {"echo": text}

    registry.register_callable(echo)
    registry.register("orders.search", lambda args: ToolResult.ok(_orders()), description="Search orders.")
    return registry


def _loop(model: ScriptedModel, registry: ToolRegistry, store: OutputStore, config: ControllerConfig) -> ControllerLoop:
    return ControllerLoop(model, registry, store, config=config, conversation_id="conv-1")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestResolveDelivery:
    LIMITS = {"inline_threshold_bytes": 100, "inline_hard_max_bytes": 1000}

    def test_traversal_results_always_inline(self) -> None:
        assert resolve_delivery("tool_outputs.read", "persist", 10**6, **self.LIMITS) == "inline"

    def test_auto(self) -> None:
        assert resolve_delivery("search", "auto", 100, **self.LIMITS) == "inline"
        assert resolve_delivery("search", "auto", 101, **self.LIMITS) == "persist"
        assert resolve_delivery("search", None, 101, **self.LIMITS) == "persist"

    def test_persist_hint(self) -> None:
        assert resolve_delivery("search", "persist", 5, **self.LIMITS) == "persist"

    def test_inline_hint_capped(self) -> None:
        assert resolve_delivery("search", "inline", 500, **self.LIMITS) == "inline"
        assert resolve_delivery("search", "inline", 1001, **self.LIMITS) == "persist"


class TestDescriptor:
    def test_fields(self) -> None:
        descriptor = build_descriptor("abc", 5000, ["x" * 50] * 100, preview_max_chars=64)
        assert descriptor["id"] == "abc"
        assert descriptor["size_bytes"] == 5000
        assert len(descriptor["preview"]) == 64
        assert descriptor["preview_truncated"] is True
        assert descriptor["available_operations"] == list(AVAILABLE_OPERATIONS)


class TestCompactHistory:
    def _messages(self, n: int, size: int) -> list[dict[str, str]]:
        return [{"role": "user", "content": f"{i:04d}" + "x" * (size - 4)} for i in range(n)]

    def test_under_limit_unchanged(self) -> None:
        msgs = self._messages(40, 100)
        assert compact_history(msgs, max_chars=48000, prefix_messages=8, tail_messages=20) == msgs

    def test_keeps_prefix_and_tail(self) -> None:
        msgs = self._messages(40, 2000)
        out = compact_history(msgs, max_chars=48000, prefix_messages=8, tail_messages=20)
        assert len(out) == 28
        assert out[:8] == msgs[:8]
        assert out[8:] == msgs[20:]

    def test_overlap_unchanged(self) -> None:
        msgs = self._messages(25, 5000)
        assert compact_history(msgs, max_chars=48000, prefix_messages=8, tail_messages=20) == msgs


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_persist_then_inspect(self, registry, store, config) -> None:
        model = ScriptedModel(
            _tool_call("orders.search"),
            _tool_call("tool_outputs.stats"),
            _tool_call("tool_outputs.sample", {"path": "$", "size": 5, "strategy": "random", "seed": 7}),
            _reply(action="complete", message="There are 500 orders."),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("How many orders are there?")

        assert outcome.state is ControllerState.COMPLETED
        assert outcome.message == "There are 500 orders."
        assert outcome.iterations == 4
        assert len(model.calls) == 4

        search_step = outcome.steps[0]
        assert search_step.delivery == "persist"
        assert search_step.size_bytes == 20480
        assert search_step.output_id == loop.last_output_id

        record = store.read(loop.last_output_id)
        assert record.payload == _orders()
        assert record.size_bytes == 20480
        assert record.conversation_id == "conv-1"

        [search_result] = _tool_results(loop, "orders.search")
        assert search_result["persisted"] is True
        descriptor = search_result["output_ref"]
        assert descriptor["id"] == loop.last_output_id
        assert descriptor["size_bytes"] == 20480
        assert len(descriptor["preview"]) == config.preview_max_chars
        assert descriptor["preview_truncated"] is True
        assert descriptor["available_operations"] == list(AVAILABLE_OPERATIONS)

        [stats] = _tool_results(loop, "tool_outputs.stats")
        assert stats["success"] is True
        assert stats["result"]["size"]["bytes"] == 20480
        assert stats["result"]["structure"]["root_type"] == "array"
        assert outcome.steps[1].args == {"id": loop.last_output_id}
        assert outcome.steps[1].delivery == "inline"

        [sample] = _tool_results(loop, "tool_outputs.sample")
        assert sample["result"]["sample_size"] == 5
        assert sample["result"]["total_items"] == 500
        assert sample["result"]["seed"] == 7

    @pytest.mark.asyncio
    async def test_malformed_next_step_fails_first_turn(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="next_step", type="tool", thinking={"task": "search"}))
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("Find lamps")

        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.VALIDATION_ERROR
        assert outcome.reason == "next_step type=tool requires non-empty 'tool' field"
        assert len(model.calls) == 1
        assert loop.state is ControllerState.FAILED


class TestModelTurn:
    @pytest.mark.asyncio
    async def test_request_shape(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="complete", message="hi"))
        loop = _loop(model, registry, store, config)
        await loop.run("Say hi")

        messages, response_format = model.calls[0]
        assert messages[0]["role"] == "system"
        assert "tool_outputs.stats" in messages[1]["content"]
        assert "echo" in messages[1]["content"]
        assert messages[-1] == {"role": "user", "content": "Say hi"}
        assert response_format["type"] == "json_schema"
        assert response_format["json_schema"]["strict"] is True

    @pytest.mark.asyncio
    async def test_provider_override(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="complete", message="hi"))
        loop = ControllerLoop(model, registry, store, config=config, provider="openai")
        await loop.run("Say hi")
        assert model.calls[0][1]["json_schema"]["strict"] is False

    @pytest.mark.asyncio
    async def test_parse_error(self, registry, store, config) -> None:
        model = ScriptedModel("I think I should search first.")
        outcome = await _loop(model, registry, store, config).run("Find lamps")
        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.PARSE_ERROR
        assert "not valid JSON" in outcome.reason

    @pytest.mark.asyncio
    async def test_model_error(self, registry, store, config) -> None:
        model = ScriptedModel(Exception("Error 401: unauthorized"))
        outcome = await _loop(model, registry, store, config).run("Find lamps")
        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.MODEL_ERROR
        assert outcome.reason.startswith("Model call failed (LLMAuthError)")

    @pytest.mark.asyncio
    async def test_dict_reply_accepted(self, registry, store, config) -> None:
        model = ScriptedModel({"action": "complete", "message": "from dict"})
        outcome = await _loop(model, registry, store, config).run("hi")
        assert outcome.message == "from dict"

    @pytest.mark.asyncio
    async def test_non_text_reply_is_parse_error(self, registry, store, config) -> None:
        model = ScriptedModel(["action", "complete"])
        outcome = await _loop(model, registry, store, config).run("hi")
        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.PARSE_ERROR
        assert outcome.reason == "Model reply must be text or a JSON object, got list"

    @pytest.mark.asyncio
    async def test_json_inside_prose_is_parse_error(self, registry, store, config) -> None:
        model = ScriptedModel('Done: {"action": "complete", "message": "hi"}')
        outcome = await _loop(model, registry, store, config).run("hi")
        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_respond_step_completes(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="next_step", message="Here you go"))
        outcome = await _loop(model, registry, store, config).run("hi")
        assert outcome.state is ControllerState.COMPLETED
        assert outcome.message == "Here you go"


class TestTools:
    @pytest.mark.asyncio
    async def test_small_result_inline(self, registry, store, config) -> None:
        model = ScriptedModel(_tool_call("echo", {"text": "ping"}), _reply(action="complete", message="pong"))
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("ping")
        assert outcome.steps[0].delivery == "inline"
        assert _tool_results(loop, "echo") == [{"success": True, "result": {"echo": "ping"}}]
        assert loop.last_output_id is None
        assert store.query()[1] == 0

    @pytest.mark.asyncio
    async def test_persist_hint(self, registry, store, config) -> None:
        model = ScriptedModel(
            _tool_call("echo", {"text": "ping"}, output_mode="persist"),
            _reply(action="complete", message="done"),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("ping")
        assert outcome.steps[0].delivery == "persist"
        assert store.read(loop.last_output_id).parameters == {"text": "ping"}

    @pytest.mark.asyncio
    async def test_tool_failure_fed_back(self, registry, store, config) -> None:
        model = ScriptedModel(_tool_call("nope"), _reply(action="complete", message="No such tool."))
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("try")
        assert outcome.state is ControllerState.COMPLETED
        assert outcome.steps[0].success is False
        assert outcome.steps[0].error == "Unknown tool: nope"
        assert _tool_results(loop, "nope") == [{"success": False, "error": "Unknown tool: nope"}]
        # The failure is visible to the second model turn.
        second_messages = model.calls[1][0]
        assert any("Unknown tool: nope" in m["content"] for m in second_messages)

    @pytest.mark.asyncio
    async def test_traversal_failure_carries_code(self, registry, store, config) -> None:
        model = ScriptedModel(
            _tool_call("tool_outputs.read", {"id": "0" * 32}),
            _reply(action="complete", message="gone"),
        )
        loop = _loop(model, registry, store, config)
        await loop.run("read")
        [result] = _tool_results(loop, "tool_outputs.read")
        assert result["success"] is False
        assert result["details"]["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_store_failure_is_terminal(self, registry, store, config, monkeypatch) -> None:
        def broken_write(**kwargs):
            raise StoreWriteError("disk full")

        monkeypatch.setattr(store, "write", broken_write)
        model = ScriptedModel(_tool_call("orders.search"))
        outcome = await _loop(model, registry, store, config).run("orders")
        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.STORE_ERROR
        assert "disk full" in outcome.reason
        assert "20480" in outcome.reason

    @pytest.mark.asyncio
    async def test_iteration_budget(self, registry, store) -> None:
        config = ControllerConfig(model="gpt-4o", max_iterations=2)
        model = ScriptedModel(*[_tool_call("echo", {"text": str(i)}) for i in range(5)])
        outcome = await _loop(model, registry, store, config).run("loop forever")
        assert outcome.state is ControllerState.FAILED
        assert outcome.cause is FailureCause.ITERATION_BUDGET
        assert outcome.reason == "Iteration budget exhausted after 2 iterations (max_iterations=2)"
        assert len(model.calls) == 2


    @pytest.mark.asyncio
    async def test_slow_tool_times_out(self, registry, store) -> None:
        async def slow(args):
            await asyncio.sleep(5)
            return {"late": True}

        registry.register("slow", slow, description="Never finishes in time.")
        config = ControllerConfig(model="gpt-4o", max_iterations=4, tool_timeout=0.05)
        model = ScriptedModel(_tool_call("slow"), _reply(action="complete", message="gave up"))
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("go")
        assert outcome.state is ControllerState.COMPLETED
        assert outcome.steps[0].success is False
        assert outcome.steps[0].error == "slow timed out after 0.05s"
        assert _tool_results(loop, "slow") == [{"success": False, "error": "slow timed out after 0.05s"}]

    @pytest.mark.asyncio
    async def test_zero_timeout_disables_limit(self, registry, store) -> None:
        async def quick(args):
            await asyncio.sleep(0)
            return {"ok": True}

        registry.register("quick", quick)
        config = ControllerConfig(model="gpt-4o", max_iterations=4, tool_timeout=0)
        model = ScriptedModel(_tool_call("quick"), _reply(action="complete", message="done"))
        loop = _loop(model, registry, store, config)
        await loop.run("go")
        assert _tool_results(loop, "quick") == [{"success": True, "result": {"ok": True}}]


def _batch(*calls: dict[str, Any]) -> str:
    return _reply(action="next_step", type="tool_batch", tools=list(calls))


class TestToolBatch:
    @pytest.mark.asyncio
    async def test_each_call_delivered_independently(self, registry, store, config) -> None:
        model = ScriptedModel(
            _batch(
                {"tool": "echo", "args": json.dumps({"text": "a"})},
                {"tool": "orders.search"},
                {"tool": "echo", "args": json.dumps({"text": "b"}), "output_mode": "persist"},
            ),
            _reply(action="complete", message="done"),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("batch")
        assert outcome.state is ControllerState.COMPLETED
        assert outcome.iterations == 2
        batch_steps = [s for s in outcome.steps if s.step_type == "tool_batch"]
        assert [(s.tool, s.delivery) for s in batch_steps] == [
            ("echo", "inline"),
            ("orders.search", "persist"),
            ("echo", "persist"),
        ]
        assert all(s.iteration == 1 for s in batch_steps)
        assert store.query()[1] == 2
        echoes = _tool_results(loop, "echo")
        assert echoes[0] == {"success": True, "result": {"echo": "a"}}
        assert echoes[1]["persisted"] is True
        [orders] = _tool_results(loop, "orders.search")
        assert orders["output_ref"]["size_bytes"] == 20480
        assert loop.last_output_id == batch_steps[2].output_id

    @pytest.mark.asyncio
    async def test_failed_call_does_not_stop_batch(self, registry, store, config) -> None:
        model = ScriptedModel(
            _batch({"tool": "nope"}, {"tool": "echo", "args": json.dumps({"text": "still"})}),
            _reply(action="complete", message="done"),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("batch")
        assert [s.success for s in outcome.steps[:2]] == [False, True]
        assert _tool_results(loop, "nope") == [{"success": False, "error": "Unknown tool: nope"}]
        assert _tool_results(loop, "echo") == [{"success": True, "result": {"echo": "still"}}]

    @pytest.mark.asyncio
    async def test_clamped_to_calls_per_step(self, registry, store) -> None:
        config = ControllerConfig(model="gpt-4o", max_iterations=8, max_tool_calls_per_step=2)
        model = ScriptedModel(
            _batch(*[{"tool": "echo", "args": json.dumps({"text": str(i)})} for i in range(3)]),
            _reply(action="complete", message="done"),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("batch")
        assert [s.args for s in outcome.steps if s.step_type == "tool_batch"] == [{"text": "0"}, {"text": "1"}]
        [notice] = _tool_results(loop, "tool_batch")
        assert notice["success"] is False
        assert notice["dropped"] == ["echo"]
        assert notice["error"] == "Only the first 2 of 3 calls ran; the rest were dropped"

    @pytest.mark.asyncio
    async def test_clamped_to_remaining_turns(self, registry, store) -> None:
        config = ControllerConfig(model="gpt-4o", max_iterations=2)
        model = ScriptedModel(
            _tool_call("echo", {"text": "first"}),
            _batch(*[{"tool": "echo", "args": json.dumps({"text": str(i)})} for i in range(3)]),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("batch")
        assert outcome.cause is FailureCause.ITERATION_BUDGET
        assert [s.args["text"] for s in outcome.steps] == ["first", "0"]
        assert _tool_results(loop, "tool_batch")[0]["dropped"] == ["echo", "echo"]

    @pytest.mark.asyncio
    async def test_store_failure_stops_batch(self, registry, store, config, monkeypatch) -> None:
        def broken_write(**kwargs):
            raise StoreWriteError("disk full")

        monkeypatch.setattr(store, "write", broken_write)
        model = ScriptedModel(_batch({"tool": "orders.search"}, {"tool": "echo", "args": json.dumps({"text": "x"})}))
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("batch")
        assert outcome.cause is FailureCause.STORE_ERROR
        assert [s.tool for s in outcome.steps] == ["orders.search"]
        assert _tool_results(loop, "echo") == []


class TestSuspendResume:
    @pytest.mark.asyncio
    async def test_ask_user_then_resume_reflecting(self, registry, store, config) -> None:
        model = ScriptedModel(
            _reply(action="ask_user", question="Which year?", context="Orders span 2023-2024"),
            _reply(action="complete", message="2024 it is"),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("Summarize orders")
        assert outcome.state is ControllerState.AWAITING_USER
        assert outcome.question == "Which year?"
        assert outcome.context == "Orders span 2023-2024"
        assert outcome.resume_to == "reflecting"

        with pytest.raises(ControllerStateError, match="resume"):
            await loop.run("again")

        outcome = await loop.resume("2024")
        assert outcome.state is ControllerState.COMPLETED
        resumed_messages = model.calls[1][0]
        assert "REFLECT" in resumed_messages[1]["content"]
        assert resumed_messages[-1] == {"role": "user", "content": "2024"}

    @pytest.mark.asyncio
    async def test_resume_to_controller_skips_reflection(self, registry, store, config) -> None:
        model = ScriptedModel(
            _reply(action="next_step", type="ask_user", question="Which file?", resume_to="controller"),
            _reply(action="complete", message="ok"),
        )
        loop = _loop(model, registry, store, config)
        outcome = await loop.run("Open the file")
        assert outcome.state is ControllerState.AWAITING_USER
        await loop.resume("notes.txt")
        assert "REFLECT" not in model.calls[1][0][1]["content"]

    @pytest.mark.asyncio
    async def test_resume_when_not_awaiting(self, registry, store, config) -> None:
        loop = _loop(ScriptedModel(), registry, store, config)
        with pytest.raises(ControllerStateError, match="awaiting_user"):
            await loop.resume("hello")


class TestTerminalStates:
    @pytest.mark.asyncio
    async def test_guardrail_stop(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="guardrail_stop", reason="Request asks for credentials", message="I can't help with that."))
        outcome = await _loop(model, registry, store, config).run("Give me the admin password")
        assert outcome.state is ControllerState.ABORTED
        assert outcome.reason == "Request asks for credentials"
        assert outcome.message == "I can't help with that."

    @pytest.mark.asyncio
    async def test_run_after_terminal(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="complete", message="done"))
        loop = _loop(model, registry, store, config)
        await loop.run("hi")
        with pytest.raises(ControllerStateError, match="completed"):
            await loop.run("again")

    @pytest.mark.asyncio
    async def test_cancel_before_run(self, registry, store, config) -> None:
        model = ScriptedModel()
        loop = _loop(model, registry, store, config)
        loop.cancel()
        outcome = await loop.run("hi")
        assert outcome.state is ControllerState.ABORTED
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_cancel_observed_at_iteration_boundary(self, registry, store, config) -> None:
        model = ScriptedModel(_tool_call("stop_me"), _reply(action="complete", message="never"))
        loop = _loop(model, registry, store, config)
        registry.register("stop_me", lambda args: loop.cancel())
        outcome = await loop.run("go")
        assert outcome.state is ControllerState.ABORTED
        assert outcome.iterations == 1
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_user(self, registry, store, config) -> None:
        model = ScriptedModel(_reply(action="ask_user", question="Sure?"))
        loop = _loop(model, registry, store, config)
        await loop.run("delete everything")
        loop.cancel()
        assert loop.state is ControllerState.ABORTED
        with pytest.raises(ControllerStateError):
            await loop.resume("yes")
