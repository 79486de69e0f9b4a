import json
from pathlib import Path
from typing import Callable

import pytest
from prometheus_client import CollectorRegistry


def _assistant_line(
    message_id: "str | None" = "msg_1",
    request_id: "str | None" = "req_1",
    model: "str | None" = "claude-sonnet-4-20250514",
    timestamp: "str | None" = "2025-01-15T12:00:00.000Z",
    input_tokens: "int" = 100,
    output_tokens: "int" = 50,
    cache_creation: "int" = 0,
    cache_read: "int" = 0,
    session_id: "str | None" = "sess-1",
    uuid: "str | None" = None,
) -> "str":
    """
    builds one assistant log line; None drops the field entirely.
    """
    message: "dict[str, object]" = {
        "role": "assistant",
        "usage": {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cache_creation_input_tokens": cache_creation,
            "cache_read_input_tokens": cache_read,
        },
    }
    if message_id is not None:
        message["id"] = message_id
    if model is not None:
        message["model"] = model

    record: "dict[str, object]" = {"type": "assistant", "message": message}
    if request_id is not None:
        record["requestId"] = request_id
    if timestamp is not None:
        record["timestamp"] = timestamp
    if session_id is not None:
        record["sessionId"] = session_id
    if uuid is not None:
        record["uuid"] = uuid
    return json.dumps(record)


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def assistant_line() -> "Callable[..., str]":
    return _assistant_line


@pytest.fixture()
def projects_dir(tmp_path: "Path") -> "Path":
    root = tmp_path / "projects"
    root.mkdir()
    return root


@pytest.fixture()
def write_session(projects_dir: "Path") -> "Callable[[str, str, list[str]], Path]":
    """
    writes lines to projects_dir/<project>/<name>.
    """

    def _write(project: "str", name: "str", lines: "list[str]") -> "Path":
        project_dir = projects_dir / project
        project_dir.mkdir(exist_ok=True)
        path = project_dir / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
