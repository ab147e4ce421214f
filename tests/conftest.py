"""Shared pytest fixtures and test doubles."""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PollingConfig, PricingConfig
from oracle.models import BackendResponse, ModelRequest, StreamEvent
from oracle.providers.base import TEXT_DELTA, BackendClient
from oracle.runner import RunDeps
from oracle.session_store import LogWriter, SessionMetadata, SessionStore

TEST_ENV = {"TEST_OPENAI_KEY": "sk-test-1234567890", "TEST_CLAUDE_KEY": "sk-ant-test-0987654321"}


class FakeClock:
    """Deterministic clock: sleep() advances time instantly and is recorded."""

    def __init__(self, start: float = 1000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


def completed_response(text: str = "answer", **usage: int) -> BackendResponse:
    return BackendResponse(
        id="resp-1",
        status="completed",
        output_text=text,
        usage=usage or {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
        request_id="req-1",
    )


def text_events(*chunks: str) -> list[StreamEvent]:
    return [StreamEvent(type=TEXT_DELTA, delta=chunk) for chunk in chunks]


class MockStream:
    """Async context manager + iterator over canned events.

    advance_per_event moves the fake clock as each event arrives; stall_after
    makes the stream hang (really) after that many events.
    """

    def __init__(
        self,
        events: list[StreamEvent],
        final: BackendResponse,
        clock: FakeClock | None = None,
        advance_per_event: float = 0.0,
        stall_after: int | None = None,
        error: BaseException | None = None,
    ) -> None:
        self.events = events
        self.final = final
        self.clock = clock
        self.advance_per_event = advance_per_event
        self.stall_after = stall_after
        self.error = error
        self.exited = False

    async def __aenter__(self) -> "MockStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.exited = True

    async def __aiter__(self):
        for index, event in enumerate(self.events):
            if self.stall_after is not None and index >= self.stall_after:
                await asyncio.Event().wait()
            if self.clock is not None:
                self.clock.advance(self.advance_per_event)
            yield event
        if self.stall_after is not None and self.stall_after >= len(self.events):
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error

    async def final_response(self) -> BackendResponse:
        return self.final


class MockClient(BackendClient):
    """Backend double: scripted stream, create result and retrieve side effects."""

    def __init__(
        self,
        config: ModelConfig,
        stream: MockStream | None = None,
        created: BackendResponse | None = None,
        retrieve_results: list[BackendResponse | BaseException] | None = None,
    ) -> None:
        super().__init__(config)
        self._stream = stream
        self.created = created
        self.retrieve_results = list(retrieve_results or [])
        self.stream_requests: list[ModelRequest] = []
        self.create_requests: list[ModelRequest] = []
        self.retrieve_calls: list[str] = []

    def stream(self, request: ModelRequest) -> MockStream:
        self.stream_requests.append(request)
        assert self._stream is not None, "no stream scripted"
        return self._stream

    async def create(self, request: ModelRequest) -> BackendResponse:
        self.create_requests.append(request)
        return self.created

    async def retrieve(self, response_id: str) -> BackendResponse:
        self.retrieve_calls.append(response_id)
        result = self.retrieve_results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingLogWriter(LogWriter):
    def __init__(self, model: str) -> None:
        self.path = f"memory://{model}.log"
        self.chunks: list[str] = []
        self.closed = False

    def write_chunk(self, chunk: str) -> bool:
        self.chunks.append(chunk)
        return True

    def close(self) -> None:
        self.closed = True


class RecordingStore(SessionStore):
    """In-memory store that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None, dict[str, Any]]] = []
        self.writers: dict[str, RecordingLogWriter] = {}

    def create_session(self, prompt, models, options=None) -> SessionMetadata:
        return SessionMetadata(id="sess-1", created_at="2026-01-01T00:00:00+00:00", models=list(models))

    def update_session(self, session_id, **patch) -> None:
        self.calls.append(("session", None, patch))

    def update_model_run(self, session_id, model, **patch) -> None:
        self.calls.append(("model", model, patch))

    def create_log_writer(self, session_id, model) -> RecordingLogWriter:
        writer = RecordingLogWriter(model)
        self.writers[model] = writer
        return writer

    def read_session(self, session_id):
        return None

    def read_model_log(self, session_id, model) -> str:
        writer = self.writers.get(model)
        return "".join(writer.chunks) if writer else ""

    def list_sessions(self, limit=20):
        return []

    def statuses_for(self, model: str) -> list[str]:
        return [patch["status"].value for kind, m, patch in self.calls if kind == "model" and m == model and "status" in patch]

    def session_statuses(self) -> list[str]:
        return [patch["status"].value for kind, _, patch in self.calls if kind == "session" and "status" in patch]


def _model(name: str, **overrides: Any) -> ModelConfig:
    values: dict[str, Any] = dict(
        name=name,
        sdk="openai",
        api_model=name,
        api_key_env="TEST_OPENAI_KEY",
        input_limit=10_000,
        pricing=PricingConfig(input_per_million=1.0, output_per_million=10.0),
        supports_background=True,
        supports_search=True,
    )
    values.update(overrides)
    return ModelConfig(**values)


@pytest.fixture
def fast_model_config() -> ModelConfig:
    return _model("fast-model")


@pytest.fixture
def pro_model_config() -> ModelConfig:
    return _model(
        "pro-model",
        long_running=True,
        pricing=PricingConfig(input_per_million=15.0, output_per_million=120.0),
    )


@pytest.fixture
def claude_model_config() -> ModelConfig:
    return _model(
        "claude-model",
        sdk="anthropic",
        api_key_env="TEST_CLAUDE_KEY",
        pricing=None,
        supports_background=False,
    )


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    fast_model_config: ModelConfig,
    pro_model_config: ModelConfig,
    claude_model_config: ModelConfig,
) -> AppConfig:
    defaults = DefaultsConfig(
        model="fast-model",
        system_prompt="You are a test oracle.",
        timeout_sec=120,
        long_running_timeout_sec=3600,
        heartbeat_sec=0,
        min_prompt_chars=20,
        sessions_dir=tmp_path / "sessions",
        polling=PollingConfig(),
    )
    models = {cfg.name: cfg for cfg in (fast_model_config, pro_model_config, claude_model_config)}
    return AppConfig(defaults=defaults, models=models, available_models=set(models))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def make_deps(sample_app_config: AppConfig, fake_clock: FakeClock):
    """Build RunDeps whose client factory returns the given client(s) by model name."""

    def _make(clients: dict[str, BackendClient] | BackendClient, store: SessionStore | None = None, write=None) -> RunDeps:
        def factory(model_cfg, credentials):
            if isinstance(clients, dict):
                return clients[model_cfg.name]
            return clients

        return RunDeps(
            config=sample_app_config,
            store=store,
            client_factory=factory,
            clock=fake_clock,
            write=write,
            env=TEST_ENV,
            heartbeat_sec=0,
        )

    return _make
