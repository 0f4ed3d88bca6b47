"""
Tests for the run ledger and logging configuration.
"""

import json
import logging

import pytest

from iacsync.logging_config import AzurePipelinesFormatter, HumanFormatter, JSONFormatter, setup_logging
from iacsync.persistence.audit import AuditWriter


class TestAuditWriter:
    """Append-only NDJSON ledger."""

    def test_creates_file(self, tmp_path):
        path = tmp_path / "nested" / "ledger.ndjson"
        AuditWriter(path)
        assert path.exists()

    def test_emit_appends_one_line_per_event(self, tmp_path):
        audit = AuditWriter(tmp_path / "ledger.ndjson")
        first = audit.emit("plan_created", run_id="R-1", env_key="a/b/c")
        second = audit.emit("apply_failed", run_id="R-1", level="error", details={"error": "x"})

        lines = (tmp_path / "ledger.ndjson").read_text().splitlines()
        assert len(lines) == 2
        assert first != second
        assert first.startswith("E-")

        events = audit.read()
        assert events[0]["env_key"] == "a/b/c"
        assert "details" not in events[0]
        assert events[1]["level"] == "error"
        assert events[1]["details"] == {"error": "x"}
        assert "env_key" not in events[1]

    def test_existing_events_preserved(self, tmp_path):
        path = tmp_path / "ledger.ndjson"
        AuditWriter(path).emit("mirror_synced", run_id="R-1")
        AuditWriter(path).emit("mirror_synced", run_id="R-2")

        assert [e["run_id"] for e in AuditWriter(path).read()] == ["R-1", "R-2"]

    def test_blank_lines_skipped(self, tmp_path):
        path = tmp_path / "ledger.ndjson"
        path.write_text('\n{"type": "x"}\n\n')
        assert AuditWriter(path).read() == [{"type": "x"}]


class TestFormatters:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("iacsync.engine.orchestrator", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_includes_known_extras(self):
        line = JSONFormatter().format(self._record(run_id="R-1", artifact_id="P-1", unrelated="x"))
        data = json.loads(line)

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["run_id"] == "R-1"
        assert data["artifact_id"] == "P-1"
        assert "unrelated" not in data

    def test_human_format(self):
        line = HumanFormatter().format(self._record())
        assert "[orchestrator   ]" in line
        assert line.endswith("hello world")

    def test_azure_annotations(self):
        formatter = AzurePipelinesFormatter()
        record = self._record()
        assert not formatter.format(record).startswith("##")

        record.levelno, record.levelname = logging.WARNING, "WARNING"
        assert formatter.format(record).startswith("##[warning]")

        record.levelno, record.levelname = logging.ERROR, "ERROR"
        assert formatter.format(record).startswith("##[error]")


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        setup_logging()

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_agent_defaults_to_azure(self, monkeypatch):
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        monkeypatch.setenv("TF_BUILD", "True")

        setup_logging()

        assert isinstance(logging.getLogger().handlers[0].formatter, AzurePipelinesFormatter)

    def test_arguments_override_env(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")

        setup_logging(level="WARNING", format_type="text")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, HumanFormatter)
        assert logging.getLogger("azure").level == logging.WARNING
