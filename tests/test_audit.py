import json
import os
import tempfile

from scriptwarden.core.audit import log_event, read_events


def test_log_event_creates_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, "task.started", {"task_id": "task-1-abc"})
        path = os.path.join(tmpdir, "audit.jsonl")
        assert os.path.exists(path)
        with open(path, "r") as f:
            line = f.readline()
        record = json.loads(line)
        assert record["type"] == "task.started"
        assert record["payload"]["task_id"] == "task-1-abc"
        assert record["ts"].endswith("Z")


def test_log_event_with_request_id() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, "task.aborted", {"k": "v"}, request_id="abc123")
        assert read_events(tmpdir)[0]["request_id"] == "abc123"


def test_read_events_returns_tail() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        for i in range(5):
            log_event(tmpdir, f"e{i}", {})
        assert [e["type"] for e in read_events(tmpdir, limit=2)] == ["e3", "e4"]


def test_read_events_missing_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        assert read_events(tmpdir) == []
