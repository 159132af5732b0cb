# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the multi-step agent runner."""

import asyncio

import pytest

from taskpilot.agent.error_classifier import USER_MESSAGES
from taskpilot.agent.events import RunCallbacks, RunEventType
from taskpilot.agent.protocols import ModelHandle, StepEvent, ToolResult
from taskpilot.agent.runner import SKIPPED_OUTPUT, AgentRunner, RunPlan, looks_like_error
from taskpilot.agent.step_budget import TextContains
from taskpilot.agent.stores import EngineStore
from taskpilot.agent.types import CompletionStatus, ErrorKind, RunStatus, TaskComplexity
from taskpilot.config.settings import Settings
from taskpilot.core.clock import ManualClock
from tests.mocks.gateway_mocks import (
    DEFAULT_SPECS,
    HANG,
    FakeRegistry,
    RecordingSleep,
    ScriptedGateway,
    call,
    step,
)

MESSAGES = [{"role": "user", "content": "Fix the landing page"}]

FEEDBACK_SUFFIX = " I need your guidance before continuing."


def _runner(gateway, registry=None, sleep=None, **overrides):
    settings = Settings(**{"retry_delay": 0.0, "step_delay": 0.0, **overrides})
    store = EngineStore(settings, clock=ManualClock())
    return AgentRunner(
        gateway, registry or FakeRegistry(), store, settings, sleep=sleep or RecordingSleep()
    )


def _plan(runner, complexity=TaskComplexity.SIMPLE, max_steps=None, conditions=None):
    return RunPlan(
        conversation_id="conv-1",
        user_id="user-1",
        complexity=complexity,
        budget=runner.planner.plan(complexity, max_steps, conditions),
        model=ModelHandle(name="gpt-4o-mini", kind="weak"),
        system_prompt="You are a test agent.",
        tool_specs=dict(DEFAULT_SPECS),
        landing_page_id="lp-1",
    )


def _tool_messages(result):
    return [m for m in result.messages if m["role"] == "tool"]


class TestCompletion:
    """Tests for how runs end."""

    @pytest.mark.asyncio
    async def test_natural_completion(self):
        """Test a text-only stop step completes the run."""
        runner = _runner(ScriptedGateway([step(text="All done")]))
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.COMPLETED
        assert result.natural_completion
        assert not result.reached_step_limit
        assert result.finish_reason == "stop"
        assert result.stopped_by == "natural"
        assert result.explanation == "Task completed."
        assert result.completion_status == CompletionStatus.SUCCESS
        assert result.text == "All done"
        assert result.messages[-1] == {"role": "assistant", "content": "All done"}
        assert result.state.status == RunStatus.COMPLETED
        assert result.state.current_step == 1

    @pytest.mark.asyncio
    async def test_step_budget_exhausted(self):
        """Test a run that never stops on its own fails at the step limit."""
        gateway = ScriptedGateway([step(calls=[call("search")]) for _ in range(5)])
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.FAILED
        assert result.reached_step_limit
        assert not result.natural_completion
        assert result.steps_completed == 3
        assert result.stopped_by == "step_count(3)"
        assert result.explanation == "Stopped after reaching the step limit of 3."
        assert result.completion_status == CompletionStatus.FAILED
        assert result.metrics.error_rate == 0.0
        assert result.state.current_step == 3
        assert result.state.current_step <= result.state.total_steps

    @pytest.mark.asyncio
    async def test_hard_ceiling_without_step_condition(self):
        """Test the step ceiling holds even when overrides drop the step-count condition."""
        gateway = ScriptedGateway([step(calls=[call("search")]) for _ in range(5)])
        runner = _runner(gateway)
        plan = _plan(runner, max_steps=2, conditions=[TextContains("DONE")])
        result = await runner.run(MESSAGES, plan)

        assert result.steps_completed == 2
        assert result.reached_step_limit
        assert result.stopped_by == "max_steps"
        assert result.status == RunStatus.FAILED
        assert result.completion_status == CompletionStatus.FAILED

    @pytest.mark.asyncio
    async def test_finalize_tool_completes(self):
        """Test calling the finalize tool completes a Complex run."""
        gateway = ScriptedGateway(
            [
                step(calls=[call("write_file", path="index.html", content="<h1>Hi</h1>")]),
                step(calls=[call("task_complete")]),
                step(text="unreachable"),
            ]
        )
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner, TaskComplexity.COMPLEX))

        assert result.status == RunStatus.COMPLETED
        assert result.explanation == "Task completed (tool_called(task_complete))."
        assert not result.natural_completion
        assert not result.reached_step_limit
        assert result.steps_completed == 2
        assert result.state.files_modified == {"index.html"}

    @pytest.mark.asyncio
    async def test_completion_marker(self):
        """Test the completion marker completes an Advanced run."""
        gateway = ScriptedGateway(
            [step(text="Summary. TASK_COMPLETE", calls=[call("search")])]
        )
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner, TaskComplexity.ADVANCED))

        assert result.status == RunStatus.COMPLETED
        assert result.stopped_by == "text_contains(TASK_COMPLETE)"

    @pytest.mark.asyncio
    async def test_stream_ends_early(self):
        """Test a stream that ends without a stop signal fails the run."""
        runner = _runner(ScriptedGateway([step(calls=[call("search")])]))
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.FAILED
        assert result.finish_reason == "tool-calls"
        assert result.explanation == "The model stopped before signalling completion."

    @pytest.mark.asyncio
    async def test_unexpected_failure(self):
        """Test an internal error ends the run as failed without raising."""
        runner = _runner(ScriptedGateway(["not a step event"]))
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.FAILED
        assert result.completion_status == CompletionStatus.FAILED
        assert result.finish_reason == "error"
        assert result.explanation == USER_MESSAGES[ErrorKind.UNKNOWN]
        assert "response_messages" not in result.explanation
        assert result.metrics.completion_status == CompletionStatus.FAILED


class TestToolExecution:
    """Tests for tool calls within a step."""

    @pytest.mark.asyncio
    async def test_results_fed_back(self):
        """Test tool results are appended under the originating tool call id."""
        gateway = ScriptedGateway(
            [step(calls=[call("read_file", "c1", path="index.html")]), step(text="Done")]
        )
        registry = FakeRegistry(handlers={"read_file": lambda input: "<html></html>"})
        runner = _runner(gateway, registry)
        result = await runner.run(MESSAGES, _plan(runner))

        execution = registry.executions[0]
        assert execution["input"] == {"path": "index.html"}
        assert execution["context"].tool_call_id == "c1"
        assert execution["context"].user_id == "user-1"
        assert execution["context"].landing_page_id == "lp-1"

        assert [m["role"] for m in result.messages] == ["user", "assistant", "tool", "assistant"]
        assert result.messages[1]["content"][0]["tool_call_id"] == "c1"
        part = result.messages[2]["content"][0]
        assert part["tool_call_id"] == "c1"
        assert part["output"] == "<html></html>"
        assert part["is_error"] is False
        assert result.metrics.success_rate == 1.0
        assert result.state.tools_used == {"read_file"}

    @pytest.mark.asyncio
    async def test_response_messages_used_when_given(self):
        """Test gateway-provided assistant messages are appended as they are."""
        custom = {"role": "assistant", "content": [{"type": "text", "text": "custom"}]}
        event = StepEvent(text="custom", finish_reason="stop", response_messages=[custom])
        runner = _runner(ScriptedGateway([event]))
        result = await runner.run(MESSAGES, _plan(runner))
        assert result.messages[-1] == custom

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """Test an unregistered tool gets an alternative-approach notice."""
        gateway = ScriptedGateway([step(calls=[call("deploy", "c1")]), step(text="ok")])
        registry = FakeRegistry()
        runner = _runner(gateway, registry, tool_call_repair=False)
        events = []
        result = await runner.run(MESSAGES, _plan(runner), emit=events.append)

        notice = USER_MESSAGES[ErrorKind.NO_SUCH_TOOL]
        assert result.status == RunStatus.COMPLETED
        assert result.notices == [notice]
        assert registry.executions == []
        part = _tool_messages(result)[0]["content"][0]
        assert part["is_error"] is True
        assert part["output"] == {"error": notice, "kind": "no_such_tool"}
        assert result.metrics.error_rate == 1.0
        assert result.completion_status == CompletionStatus.FAILED
        assert result.state.error_count == 1

        notices = [e for e in events if e.type == RunEventType.NOTICE]
        assert notices[0].data["strategy"] == "alternative"
        assert notices[0].data["tool_name"] == "deploy"
        assert notices[0].data["retries"] == 0

    @pytest.mark.asyncio
    async def test_application_error_output(self):
        """Test tool outputs reporting failure are treated as failed calls."""
        gateway = ScriptedGateway(
            [step(calls=[call("read_file", path="../etc")]), step(text="ok")]
        )
        registry = FakeRegistry(
            handlers={"read_file": lambda input: {"success": False, "error": "validation failed"}}
        )
        runner = _runner(gateway, registry, tool_call_repair=False)
        events = []
        result = await runner.run(MESSAGES, _plan(runner), emit=events.append)

        assert _tool_messages(result)[0]["content"][0]["is_error"] is True
        assert result.notices == [USER_MESSAGES[ErrorKind.INVALID_TOOL_INPUT]]
        notice = next(e for e in events if e.type == RunEventType.NOTICE)
        assert notice.data["strategy"] == "retry"

    @pytest.mark.asyncio
    async def test_tool_result_error(self):
        """Test a ToolResult with an error is a failed call."""
        gateway = ScriptedGateway([step(calls=[call("search")]), step(text="ok")])
        registry = FakeRegistry(handlers={"search": lambda input: ToolResult(error="index offline")})
        runner = _runner(gateway, registry, tool_call_repair=False)
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.metrics.tool_executions[0].success is False
        assert result.metrics.tool_executions[0].error_message == "index offline"

    @pytest.mark.asyncio
    async def test_tool_timeout_skips_repair(self):
        """Test a slow tool times out and is not sent for repair."""
        gateway = ScriptedGateway([step(calls=[call("search")]), step(text="ok")])
        registry = FakeRegistry(handlers={"search": lambda input: asyncio.sleep(10)})
        runner = _runner(gateway, registry, tool_timeout=0.05)
        result = await runner.run(MESSAGES, _plan(runner))

        assert len(gateway.calls) == 1
        assert result.notices == [USER_MESSAGES[ErrorKind.TRANSPORT_OR_TIMEOUT]]
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_halts_at_feedback_threshold(self):
        """Test repeated failures in one step pause the run for user feedback."""
        calls = [call("deploy", f"c{i}") for i in range(1, 5)]
        gateway = ScriptedGateway([step(calls=calls), step(text="never reached")])
        runner = _runner(gateway, tool_call_repair=False)
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.PAUSED
        assert result.explanation == USER_MESSAGES[ErrorKind.NO_SUCH_TOOL] + FEEDBACK_SUFFIX
        assert result.steps_completed == 1
        parts = _tool_messages(result)[0]["content"]
        assert [p["tool_call_id"] for p in parts] == ["c1", "c2", "c3", "c4"]
        assert parts[-1]["output"] == SKIPPED_OUTPUT
        assert len(result.metrics.tool_executions) == 3
        assert result.state.status == RunStatus.PAUSED
        assert result.completion_status == CompletionStatus.FAILED

    @pytest.mark.asyncio
    async def test_failures_counted_per_step(self):
        """Test a failure in a later step starts counting from zero again."""
        gateway = ScriptedGateway(
            [
                step(calls=[call("deploy"), call("deploy")]),
                step(calls=[call("deploy")]),
                step(text="done"),
            ]
        )
        runner = _runner(gateway, tool_call_repair=False)
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.COMPLETED
        assert len(result.notices) == 3


class TestToolCallRepair:
    """Tests for repair of failed tool calls during a run."""

    @pytest.mark.asyncio
    async def test_repaired_call_substituted(self):
        """Test a corrected call is executed and replaces the failed one in history."""
        gateway = ScriptedGateway(
            [step(calls=[call("read_file", "c1")]), step(text="Done")],
            [step(calls=[call("read_file", "other", path="index.html")])],
        )
        registry = FakeRegistry()
        runner = _runner(gateway, registry)
        events = []
        result = await runner.run(MESSAGES, _plan(runner), emit=events.append)

        assert registry.executions[0]["input"] == {"path": "index.html"}
        assert registry.executions[0]["context"].tool_call_id == "c1"
        assistant_part = result.messages[1]["content"][0]
        assert assistant_part == {
            "type": "tool-call",
            "tool_call_id": "c1",
            "tool_name": "read_file",
            "input": {"path": "index.html"},
        }
        assert result.messages[2]["content"][0]["is_error"] is False
        assert result.notices == []
        assert result.metrics.success_rate == 1.0

        repair_request = gateway.calls[1]["messages"]
        assert repair_request[-1]["role"] == "tool"
        assert repair_request[-1]["content"][0]["is_error"] is True
        tool_event = next(e for e in events if e.type == RunEventType.TOOL_CALL)
        assert tool_event.data["repaired"] is True

    @pytest.mark.asyncio
    async def test_repair_without_call_falls_back_to_recovery(self):
        """Test a repair that offers nothing leaves the original failure."""
        gateway = ScriptedGateway(
            [step(calls=[call("read_file", "c1")]), step(text="ok")],
            [step(text="I do not know the path")],
        )
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.notices == [USER_MESSAGES[ErrorKind.INVALID_TOOL_INPUT]]
        assert result.messages[2]["content"][0]["is_error"] is True

    @pytest.mark.asyncio
    async def test_repair_failure(self):
        """Test a failing repair request simplifies the task."""
        gateway = ScriptedGateway(
            [step(calls=[call("read_file", "c1")]), step(text="ok")],
            [ConnectionError("down")],
        )
        runner = _runner(gateway)
        events = []
        result = await runner.run(MESSAGES, _plan(runner), emit=events.append)

        assert result.notices == [USER_MESSAGES[ErrorKind.REPAIR_FAILURE]]
        notice = next(e for e in events if e.type == RunEventType.NOTICE)
        assert notice.data["strategy"] == "simplify"


class TestGatewayFailures:
    """Tests for failures of the model gateway."""

    @pytest.mark.asyncio
    async def test_timeout_then_recovery(self):
        """Test a gateway timeout is retried on a fresh stream."""
        gateway = ScriptedGateway([HANG], [step(text="Done")])
        runner = _runner(gateway, response_timeout=0.05)
        result = await runner.run(MESSAGES, _plan(runner))

        assert result.status == RunStatus.COMPLETED
        assert result.notices == [USER_MESSAGES[ErrorKind.TRANSPORT_OR_TIMEOUT]]
        assert result.state.error_count == 1
        assert len(gateway.calls) == 2
        assert gateway.closed == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_degrades_then_pauses(self):
        """Test repeated transport failures switch to the fallback model and then pause."""
        gateway = ScriptedGateway(
            [ConnectionError("down")], [ConnectionError("down")], [ConnectionError("down")]
        )
        runner = _runner(gateway, fallback_model="backup-model")
        result = await runner.run(MESSAGES, _plan(runner))

        assert [m.kind for m in gateway.models] == ["weak", "weak", "fallback"]
        assert gateway.models[2].name == "backup-model"
        assert result.status == RunStatus.PAUSED
        assert result.degraded
        assert result.steps_completed == 0
        assert result.finish_reason == "error"
        assert result.state.error_count == 3

    @pytest.mark.asyncio
    async def test_stream_open_failure_retried(self):
        """Test a gateway that fails while opening the stream is retried."""

        class FlakyGateway(ScriptedGateway):
            def stream_steps(self, model, system_prompt, messages, tool_specs):
                if not self.calls:
                    self.calls.append({"model": model})
                    raise ConnectionError("network unreachable")
                return super().stream_steps(model, system_prompt, messages, tool_specs)

        gateway = FlakyGateway([step(text="done")])
        runner = _runner(gateway)
        events = []
        result = await runner.run(MESSAGES, _plan(runner), emit=events.append)

        assert result.status == RunStatus.COMPLETED
        assert result.completion_status == CompletionStatus.SUCCESS
        assert result.notices == [USER_MESSAGES[ErrorKind.TRANSPORT_OR_TIMEOUT]]
        assert result.state.error_count == 1
        assert len(gateway.calls) == 2
        notice = next(e for e in events if e.type == RunEventType.NOTICE)
        assert notice.data["strategy"] == "retry"
        assert notice.data["retries"] == 1

    @pytest.mark.asyncio
    async def test_stream_open_keeps_failing(self):
        """Test a gateway that never opens a stream pauses the run for feedback."""

        class BrokenGateway:
            def __init__(self):
                self.opened = 0

            def stream_steps(self, model, system_prompt, messages, tool_specs):
                self.opened += 1
                raise TypeError("miswired gateway")

        gateway = BrokenGateway()
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner))

        assert gateway.opened == 3
        assert result.status == RunStatus.PAUSED
        assert result.completion_status == CompletionStatus.FAILED
        assert result.finish_reason == "error"
        assert result.explanation == USER_MESSAGES[ErrorKind.UNKNOWN] + FEEDBACK_SUFFIX
        assert "miswired" not in result.explanation


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self):
        """Test cancellation is honored at the next step boundary."""
        cancel_event = asyncio.Event()
        gateway = ScriptedGateway([step(calls=[call("search")]) for _ in range(3)])
        runner = _runner(gateway)
        callbacks = RunCallbacks(on_step_finish=lambda step, state: cancel_event.set())
        result = await runner.run(
            MESSAGES, _plan(runner), callbacks=callbacks, cancel_event=cancel_event
        )

        assert result.status == RunStatus.PAUSED
        assert result.steps_completed == 1
        assert result.explanation == "Run cancelled after 1 step(s)."

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        """Test a run cancelled up front never calls the gateway."""
        cancel_event = asyncio.Event()
        cancel_event.set()
        gateway = ScriptedGateway([step(text="Done")])
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner), cancel_event=cancel_event)

        assert result.status == RunStatus.PAUSED
        assert result.finish_reason == "cancelled"
        assert gateway.calls == []


class TestObservers:
    """Tests for callbacks and emitted events."""

    @pytest.mark.asyncio
    async def test_callbacks(self):
        """Test progress, tool call and step callbacks fire per step."""
        progress, tool_calls, finished = [], [], []

        async def on_tool_call(tool_call, result_part):
            tool_calls.append((tool_call.tool_name, result_part["is_error"]))

        gateway = ScriptedGateway([step(calls=[call("search")]), step(text="Done")])
        runner = _runner(gateway)
        callbacks = RunCallbacks(
            on_progress=progress.append,
            on_tool_call=on_tool_call,
            on_step_finish=lambda step, state: finished.append(state.current_step),
        )
        await runner.run(MESSAGES, _plan(runner), callbacks=callbacks)

        assert [(p.current_step, p.total_steps) for p in progress] == [(1, 3), (2, 3)]
        assert progress[0].action == "Called search"
        assert tool_calls == [("search", False)]
        assert finished == [1, 2]

    @pytest.mark.asyncio
    async def test_observer_failure_ignored(self):
        """Test a raising observer does not affect the run."""

        def broken(update):
            raise RuntimeError("observer bug")

        runner = _runner(ScriptedGateway([step(text="Done")]))
        result = await runner.run(
            MESSAGES, _plan(runner), callbacks=RunCallbacks(on_progress=broken)
        )
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        """Test the events of a single-step run."""
        events = []
        runner = _runner(ScriptedGateway([step(text="Done")]))
        await runner.run(MESSAGES, _plan(runner), emit=events.append)

        assert [e.type for e in events] == [
            RunEventType.PROGRESS,
            RunEventType.REASONING,
            RunEventType.STEP_FINISHED,
            RunEventType.COMPLETED,
        ]
        assert events[1].data["phase"] == "validation"
        assert events[-1].data["summary"]["steps_completed"] == 1


class TestExecutionTuning:
    """Tests for pacing, escalation and history trimming."""

    @pytest.mark.asyncio
    async def test_token_rate_pacing(self):
        """Test heavy token usage adds a delay before the next step."""
        sleep = RecordingSleep()
        gateway = ScriptedGateway([step(calls=[call("search")], tokens=150), step(text="ok")])
        runner = _runner(
            gateway,
            sleep=sleep,
            token_rate_warning=100,
            token_rate_critical=1000,
            token_rate_warning_delay=3.0,
        )
        await runner.run(MESSAGES, _plan(runner))
        assert sleep.delays == [3.0]

    @pytest.mark.asyncio
    async def test_step_delay(self):
        """Test the tier step delay applies between steps only."""
        sleep = RecordingSleep()
        gateway = ScriptedGateway([step(calls=[call("search")]), step(text="ok")])
        runner = _runner(gateway, sleep=sleep, step_delay=1.0)
        await runner.run(MESSAGES, _plan(runner, TaskComplexity.MODERATE))
        assert sleep.delays == [1.5]

    @pytest.mark.asyncio
    async def test_escalates_to_strong_model(self):
        """Test a long Moderate run moves to the strong model on a new stream."""
        gateway = ScriptedGateway(
            [step(calls=[call("search")]), step(text="not reached")],
            [step(text="Done")],
        )
        runner = _runner(gateway, escalation_min_step=1, escalation_min_messages=2)
        result = await runner.run(MESSAGES, _plan(runner, TaskComplexity.MODERATE))

        assert [m.kind for m in gateway.models] == ["weak", "strong"]
        assert result.text == "Done"
        assert gateway.closed == 2

    @pytest.mark.asyncio
    async def test_history_window_trimmed(self):
        """Test the gateway sees a trimmed window while the full history is kept."""
        gateway = ScriptedGateway([step(calls=[call("search")]) for _ in range(6)])
        runner = _runner(gateway)
        result = await runner.run(MESSAGES, _plan(runner, max_steps=6))

        assert gateway.seen_lengths == [1, 3, 5, 7, 9, 7]
        assert len(result.messages) == 13
        assert result.messages[0] == MESSAGES[0]


class TestLooksLikeError:
    """Tests for application-level error detection."""

    @pytest.mark.parametrize(
        "output,expected",
        [
            ({"error": "boom"}, True),
            ({"success": False}, True),
            ({"status": "error"}, True),
            ({"error": None, "success": True}, False),
            ("error: this is just text", False),
            (None, False),
        ],
    )
    def test_detection(self, output, expected):
        """Test which outputs count as failures."""
        assert looks_like_error(output) is expected
