"""Tests for oracle/multi_model.py — concurrency, partial failure, settlement order."""

import asyncio
import logging

import httpx
import pytest

from oracle.errors import OracleResponseError, OracleTransportError, PromptValidationError
from oracle.models import BackendResponse, Fulfilled, Rejected, RunState, TransportFailureReason
from oracle.multi_model import dedupe_models, run_multi_model
from tests.conftest import MockClient, MockStream, RecordingStore, completed_response, text_events

PROMPT = "Compare these two approaches to cache invalidation in depth."


class DelayedStream(MockStream):
    """Waits (really) before opening, to control which model settles first."""

    def __init__(self, *args, delay: float = 0.0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.started = asyncio.Event()

    async def __aenter__(self) -> "DelayedStream":
        self.started.set()
        await asyncio.sleep(self.delay)
        return self


def _streaming(config, text: str, delay: float = 0.0, error: BaseException | None = None) -> MockClient:
    stream = DelayedStream(text_events(text), completed_response(text), delay=delay, error=error)
    return MockClient(config, stream=stream)


async def test_every_model_gets_an_outcome(make_deps, fast_model_config, claude_model_config):
    clients = {
        "fast-model": _streaming(fast_model_config, "fast answer"),
        "claude-model": _streaming(claude_model_config, "claude answer"),
    }
    summary = await run_multi_model(PROMPT, ["fast-model", "claude-model"], make_deps(clients))

    assert sorted(o.model for o in summary.fulfilled) == ["claude-model", "fast-model"]
    assert summary.rejected == []
    assert summary.status is RunState.COMPLETED


async def test_callbacks_fire_in_settlement_order(make_deps, fast_model_config, claude_model_config):
    clients = {
        "fast-model": _streaming(fast_model_config, "slow one", delay=0.2),
        "claude-model": _streaming(claude_model_config, "quick one", delay=0.0),
    }
    seen: list[str] = []

    summary = await run_multi_model(
        PROMPT,
        ["fast-model", "claude-model"],
        make_deps(clients),
        on_model_done=lambda outcome: seen.append(outcome.model),
    )

    assert seen == ["claude-model", "fast-model"]
    assert [o.model for o in summary.fulfilled] == ["claude-model", "fast-model"]


async def test_models_are_dispatched_concurrently(make_deps, fast_model_config, claude_model_config):
    slow = _streaming(fast_model_config, "slow", delay=0.2)
    quick = _streaming(claude_model_config, "quick", delay=0.0)
    first_settled: list[tuple[str, bool]] = []

    def on_done(outcome):
        if not first_settled:
            first_settled.append((outcome.model, slow._stream.started.is_set()))

    await run_multi_model(
        PROMPT,
        ["fast-model", "claude-model"],
        make_deps({"fast-model": slow, "claude-model": quick}),
        on_model_done=on_done,
    )

    # The slow model was already in flight when the quick one finished
    assert first_settled == [("claude-model", True)]


async def test_async_callback_is_awaited(make_deps, fast_model_config):
    seen: list[str] = []

    async def on_done(outcome):
        await asyncio.sleep(0)
        seen.append(outcome.model)

    await run_multi_model(PROMPT, ["fast-model"], make_deps(_streaming(fast_model_config, "hi")), on_model_done=on_done)

    assert seen == ["fast-model"]


async def test_one_failure_does_not_sink_the_others(
    make_deps, recording_store, fast_model_config, pro_model_config, claude_model_config
):
    clients = {
        "fast-model": _streaming(fast_model_config, "fast answer"),
        "claude-model": _streaming(claude_model_config, "", error=httpx.ConnectError("connection reset")),
        "pro-model": MockClient(pro_model_config, created=completed_response("pro answer")),
    }
    summary = await run_multi_model(
        PROMPT,
        ["fast-model", "claude-model", "pro-model"],
        make_deps(clients, store=recording_store),
        session_id="sess-1",
    )

    assert sorted(o.model for o in summary.fulfilled) == ["fast-model", "pro-model"]
    assert [o.model for o in summary.rejected] == ["claude-model"]
    rejected = summary.rejected[0]
    assert isinstance(rejected, Rejected)
    assert isinstance(rejected.reason, OracleTransportError)
    assert rejected.reason.reason is TransportFailureReason.CONNECTION_LOST
    assert summary.status is RunState.ERROR

    assert recording_store.statuses_for("fast-model") == ["running", "completed"]
    assert recording_store.statuses_for("pro-model") == ["running", "completed"]
    assert recording_store.statuses_for("claude-model") == ["running", "error"]
    assert recording_store.session_statuses() == ["running", "error"]
    final_patch = recording_store.calls[-1][2]
    assert final_patch["error_message"].startswith("claude-model:")


async def test_response_failure_in_middle_model(
    make_deps, recording_store, fast_model_config, pro_model_config, claude_model_config
):
    failed = BackendResponse(id="msg-2", status="failed", error_message="invalid request: unsupported tool")
    clients = {
        "fast-model": _streaming(fast_model_config, "one"),
        "claude-model": MockClient(claude_model_config, stream=DelayedStream([], failed)),
        "pro-model": MockClient(pro_model_config, created=completed_response("three")),
    }
    summary = await run_multi_model(
        PROMPT,
        ["fast-model", "claude-model", "pro-model"],
        make_deps(clients, store=recording_store),
        session_id="sess-1",
    )

    assert [o.model for o in summary.rejected] == ["claude-model"]
    assert isinstance(summary.rejected[0].reason, OracleResponseError)
    assert "unsupported tool" in str(summary.rejected[0].reason)
    assert len(summary.fulfilled) + len(summary.rejected) == 3
    assert recording_store.session_statuses()[-1] == "error"


async def test_all_models_marked_running_before_any_settles(make_deps, recording_store, fast_model_config, claude_model_config):
    clients = {
        "fast-model": _streaming(fast_model_config, "a"),
        "claude-model": _streaming(claude_model_config, "b"),
    }
    await run_multi_model(
        PROMPT, ["fast-model", "claude-model"], make_deps(clients, store=recording_store), session_id="sess-1"
    )

    model_statuses = [patch["status"] for kind, _, patch in recording_store.calls if kind == "model"]
    assert model_statuses[:2] == [RunState.RUNNING, RunState.RUNNING]


async def test_answers_go_to_per_model_logs(make_deps, recording_store, fast_model_config, claude_model_config):
    clients = {
        "fast-model": _streaming(fast_model_config, "fast answer"),
        "claude-model": _streaming(claude_model_config, "claude answer"),
    }
    summary = await run_multi_model(
        PROMPT, ["fast-model", "claude-model"], make_deps(clients, store=recording_store), session_id="sess-1"
    )

    assert recording_store.read_model_log("sess-1", "fast-model") == "fast answer\n"
    assert recording_store.read_model_log("sess-1", "claude-model") == "claude answer\n"
    assert all(writer.closed for writer in recording_store.writers.values())
    fast = next(o for o in summary.fulfilled if o.model == "fast-model")
    assert isinstance(fast, Fulfilled)
    assert fast.answer_text == "fast answer"
    assert fast.log_path == "memory://fast-model.log"


async def test_aggregate_usage_sums_fulfilled_models(make_deps, fast_model_config, claude_model_config):
    clients = {
        "fast-model": _streaming(fast_model_config, "a"),
        "claude-model": _streaming(claude_model_config, "b"),
    }
    summary = await run_multi_model(PROMPT, ["fast-model", "claude-model"], make_deps(clients))

    usage = summary.aggregate_usage()
    assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (20, 10, 30)
    # claude-model has no pricing, so only fast-model contributes a cost
    assert usage.cost == pytest.approx(10 * 1e-6 + 5 * 10e-6)


async def test_empty_model_list_is_rejected(make_deps, fast_model_config):
    with pytest.raises(PromptValidationError):
        await run_multi_model(PROMPT, [], make_deps(_streaming(fast_model_config, "x")))
    with pytest.raises(PromptValidationError):
        await run_multi_model(PROMPT, ["  "], make_deps(_streaming(fast_model_config, "x")))


async def test_unknown_model_fails_before_dispatch(make_deps, fast_model_config):
    client = _streaming(fast_model_config, "x")
    with pytest.raises(PromptValidationError, match="Unsupported model"):
        await run_multi_model(PROMPT, ["fast-model", "nope-model"], make_deps(client))
    assert client.stream_requests == []


async def test_validation_failure_is_a_rejection_not_an_exception(make_deps, fast_model_config, pro_model_config):
    # Short prompts are refused for long-running models only
    clients = {
        "fast-model": _streaming(fast_model_config, "ok"),
        "pro-model": MockClient(pro_model_config, created=completed_response("never")),
    }
    summary = await run_multi_model("too short", ["fast-model", "pro-model"], make_deps(clients))

    assert [o.model for o in summary.fulfilled] == ["fast-model"]
    assert [o.model for o in summary.rejected] == ["pro-model"]
    assert isinstance(summary.rejected[0].reason, PromptValidationError)
    assert clients["pro-model"].create_requests == []


def test_dedupe_models_keeps_first_occurrence():
    assert dedupe_models(["b", "a", "b", " a ", ""]) == ["b", "a"]


class FlakyStore(RecordingStore):
    """RecordingStore that fails chosen writes for one model."""

    def __init__(self, model: str, fail_log_writer: bool = False, fail_completed: bool = False) -> None:
        super().__init__()
        self.model = model
        self.fail_log_writer = fail_log_writer
        self.fail_completed = fail_completed

    def create_log_writer(self, session_id, model):
        if self.fail_log_writer and model == self.model:
            raise OSError("disk full")
        return super().create_log_writer(session_id, model)

    def update_model_run(self, session_id, model, **patch) -> None:
        if self.fail_completed and model == self.model and patch.get("status") is RunState.COMPLETED:
            raise OSError("disk full")
        super().update_model_run(session_id, model, **patch)


async def test_log_writer_failure_is_a_rejection(make_deps, fast_model_config, claude_model_config):
    store = FlakyStore("claude-model", fail_log_writer=True)
    clients = {
        "fast-model": _streaming(fast_model_config, "fast answer"),
        "claude-model": _streaming(claude_model_config, "never sent"),
    }
    summary = await run_multi_model(
        PROMPT, ["fast-model", "claude-model"], make_deps(clients, store=store), session_id="sess-1"
    )

    assert [o.model for o in summary.fulfilled] == ["fast-model"]
    assert [o.model for o in summary.rejected] == ["claude-model"]
    assert isinstance(summary.rejected[0].reason, OSError)
    assert clients["claude-model"].stream_requests == []
    assert store.statuses_for("claude-model") == ["running", "error"]
    assert store.session_statuses() == ["running", "error"]


async def test_completion_write_failure_is_a_rejection(make_deps, fast_model_config, claude_model_config):
    store = FlakyStore("claude-model", fail_completed=True)
    clients = {
        "fast-model": _streaming(fast_model_config, "fast answer"),
        "claude-model": _streaming(claude_model_config, "claude answer"),
    }
    summary = await run_multi_model(
        PROMPT, ["fast-model", "claude-model"], make_deps(clients, store=store), session_id="sess-1"
    )

    assert [o.model for o in summary.fulfilled] == ["fast-model"]
    assert [o.model for o in summary.rejected] == ["claude-model"]
    assert "disk full" in str(summary.rejected[0].reason)
    assert store.writers["claude-model"].closed
    assert store.statuses_for("claude-model") == ["running", "error"]


async def test_failing_callback_does_not_stop_collection(make_deps, recording_store, fast_model_config, claude_model_config, caplog):
    clients = {
        "fast-model": _streaming(fast_model_config, "a"),
        "claude-model": _streaming(claude_model_config, "b"),
    }

    def on_done(outcome):
        raise RuntimeError("renderer crashed")

    with caplog.at_level(logging.ERROR, logger="oracle.multi_model"):
        summary = await run_multi_model(
            PROMPT,
            ["fast-model", "claude-model"],
            make_deps(clients, store=recording_store),
            session_id="sess-1",
            on_model_done=on_done,
        )

    assert sorted(o.model for o in summary.fulfilled) == ["claude-model", "fast-model"]
    assert summary.status is RunState.COMPLETED
    assert recording_store.session_statuses() == ["running", "completed"]
    assert caplog.text.count("on_model_done failed") == 2


async def test_duplicate_models_run_once(make_deps, fast_model_config, claude_model_config):
    clients = {
        "fast-model": _streaming(fast_model_config, "fast answer"),
        "claude-model": _streaming(claude_model_config, "claude answer"),
    }
    seen: list[str] = []
    summary = await run_multi_model(
        PROMPT,
        ["fast-model", "fast-model", "claude-model"],
        make_deps(clients),
        on_model_done=lambda outcome: seen.append(outcome.model),
    )

    outcomes = summary.fulfilled + summary.rejected
    assert len(outcomes) == 2
    assert sorted(o.model for o in outcomes) == ["claude-model", "fast-model"]
    assert sorted(seen) == ["claude-model", "fast-model"]
    assert len(clients["fast-model"].stream_requests) == 1
