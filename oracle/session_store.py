"""Session State Store: per-run and per-model status, plus per-model answer logs."""

import json
import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from oracle.models import RunState

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def aggregate_run_state(states: list[RunState]) -> RunState:
    """Fold child model states into the session state.

    running while any child runs; completed only when all completed; error when
    any child failed and none still run; pending while unstarted children remain.
    """
    if not states:
        return RunState.PENDING
    if RunState.RUNNING in states:
        return RunState.RUNNING
    if all(s is RunState.COMPLETED for s in states):
        return RunState.COMPLETED
    if RunState.ERROR in states:
        return RunState.ERROR
    if RunState.PENDING in states:
        return RunState.PENDING
    return RunState.CANCELLED


@dataclass
class ModelRunMetadata:
    model: str
    status: RunState = RunState.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    usage: dict[str, Any] | None = None
    error_message: str | None = None
    log_path: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ModelRunMetadata":
        data = dict(raw)
        data["status"] = RunState(data.get("status", RunState.PENDING))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class SessionMetadata:
    id: str
    created_at: str
    status: RunState = RunState.PENDING
    prompt_preview: str = ""
    models: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)
    started_at: str | None = None
    completed_at: str | None = None
    usage: dict[str, Any] | None = None
    elapsed_ms: float | None = None
    error_message: str | None = None
    transport: dict[str, Any] | None = None
    response: dict[str, Any] | None = None
    model_runs: dict[str, ModelRunMetadata] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SessionMetadata":
        data = dict(raw)
        data["status"] = RunState(data.get("status", RunState.PENDING))
        data.pop("model_runs", None)
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class LogWriter(ABC):
    """Append-only sink for one model's streamed answer and log lines."""

    path: str | None = None

    @abstractmethod
    def write_chunk(self, chunk: str) -> bool: ...

    def write_line(self, line: str = "") -> None:
        self.write_chunk(f"{line}\n")

    def close(self) -> None:
        return None


class SessionStore(ABC):
    """Persists run state. Implementations serialize writes for the same key."""

    @abstractmethod
    def create_session(self, prompt: str, models: list[str], options: dict[str, Any] | None = None) -> SessionMetadata: ...

    @abstractmethod
    def update_session(self, session_id: str, **patch: Any) -> None: ...

    @abstractmethod
    def update_model_run(self, session_id: str, model: str, **patch: Any) -> None: ...

    @abstractmethod
    def create_log_writer(self, session_id: str, model: str) -> LogWriter: ...

    @abstractmethod
    def read_session(self, session_id: str) -> SessionMetadata | None: ...

    @abstractmethod
    def read_model_log(self, session_id: str, model: str) -> str: ...

    @abstractmethod
    def list_sessions(self, limit: int = 20) -> list[SessionMetadata]: ...


def _slug(text: str, max_len: int = 32) -> str:
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len].strip("-") or "session"


def _safe_name(model: str) -> str:
    return re.sub(r"[^\w.-]", "_", model)


def _jsonable(value: Any) -> Any:
    if isinstance(value, RunState):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "__dataclass_fields__"):
        return _jsonable(asdict(value))
    return value


class _FileLogWriter(LogWriter):
    def __init__(self, path: Path) -> None:
        self.path = str(path)
        self._file = path.open("a", encoding="utf-8")

    def write_chunk(self, chunk: str) -> bool:
        self._file.write(chunk)
        self._file.flush()
        return True

    def close(self) -> None:
        self._file.close()


class FileSessionStore(SessionStore):
    """JSON files under root/<session_id>/ (meta.json, models/<model>.json|.log)."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _session_dir(self, session_id: str) -> Path:
        return self._root / session_id

    def _meta_path(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "meta.json"

    def _model_path(self, session_id: str, model: str, suffix: str) -> Path:
        return self._session_dir(session_id) / "models" / f"{_safe_name(model)}{suffix}"

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(_jsonable(data), indent=2), encoding="utf-8")
        os.replace(tmp, path)

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def create_session(self, prompt: str, models: list[str], options: dict[str, Any] | None = None) -> SessionMetadata:
        session_id = f"{_slug(prompt)}-{uuid.uuid4().hex[:6]}"
        meta = SessionMetadata(
            id=session_id,
            created_at=utc_now_iso(),
            prompt_preview=prompt.strip()[:200],
            models=list(models),
            options=dict(options or {}),
        )
        self._write_json(self._meta_path(session_id), asdict(meta))
        for model in models:
            self._write_json(self._model_path(session_id, model, ".json"), asdict(ModelRunMetadata(model=model)))
        logger.debug("Created session %s in %s", session_id, self._root)
        return meta

    def update_session(self, session_id: str, **patch: Any) -> None:
        path = self._meta_path(session_id)
        current = self._read_json(path)
        if current is None:
            raise KeyError(f"Unknown session: {session_id}")
        current.update(patch)
        self._write_json(path, current)

    def update_model_run(self, session_id: str, model: str, **patch: Any) -> None:
        path = self._model_path(session_id, model, ".json")
        current = self._read_json(path) or asdict(ModelRunMetadata(model=model))
        current.update(patch)
        self._write_json(path, current)

    def create_log_writer(self, session_id: str, model: str) -> LogWriter:
        path = self._model_path(session_id, model, ".log")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("", encoding="utf-8")
        return _FileLogWriter(path)

    def read_session(self, session_id: str) -> SessionMetadata | None:
        raw = self._read_json(self._meta_path(session_id))
        if raw is None:
            return None
        meta = SessionMetadata.from_dict(raw)
        models_dir = self._session_dir(session_id) / "models"
        if models_dir.is_dir():
            for path in sorted(models_dir.glob("*.json")):
                run = ModelRunMetadata.from_dict(json.loads(path.read_text(encoding="utf-8")))
                meta.model_runs[run.model] = run
        if meta.model_runs:
            meta.status = aggregate_run_state([r.status for r in meta.model_runs.values()])
        return meta

    def read_model_log(self, session_id: str, model: str) -> str:
        path = self._model_path(session_id, model, ".log")
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def list_sessions(self, limit: int = 20) -> list[SessionMetadata]:
        if not self._root.is_dir():
            return []
        sessions = [
            meta
            for meta in (self.read_session(p.name) for p in self._root.iterdir() if p.is_dir())
            if meta is not None
        ]
        sessions.sort(key=lambda m: m.created_at, reverse=True)
        return sessions[:limit]
