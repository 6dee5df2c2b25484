"""Tests for two-tier logging."""

import json
import logging

import pytest

from chatrank import logging as chatrank_logging
from chatrank.config import Config
from chatrank.logging import (
    ConsoleFormatter,
    JSONFormatter,
    get_debug_log_path,
    get_filtered_logs,
    rotate_debug_log,
    set_active_project,
    setup_logging,
)


def make_record(name: str = "chatrank.store", level: int = logging.INFO, msg: str = "hello", **extra):
    record = logging.LogRecord(name, level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def data_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_entry(self):
        set_active_project("proj-1")
        try:
            entry = json.loads(JSONFormatter().format(make_record(ctx={"tier": "HIGH"})))
        finally:
            set_active_project(None)

        assert entry["component"] == "store"
        assert entry["level"] == "INFO"
        assert entry["project"] == "proj-1"
        assert entry["msg"] == "hello"
        assert entry["ctx"] == {"tier": "HIGH"}

    def test_console_line(self):
        line = ConsoleFormatter(use_colors=False).format(make_record(level=logging.WARNING))
        assert "[WRN] store: hello" in line


class TestDebugLog:
    def test_path_honors_xdg(self, data_home):
        assert get_debug_log_path() == data_home / "chatrank" / "logs" / "debug.log"

    def test_rotate(self, tmp_path):
        log_path = tmp_path / "debug.log"
        log_path.write_text("old\n")
        rotate_debug_log(log_path)
        assert not log_path.exists()
        assert (tmp_path / "debug.log.1").read_text() == "old\n"

    def test_missing_log(self, data_home):
        assert get_filtered_logs() == "No debug log found."

    def test_filtered_logs(self, data_home):
        log_path = get_debug_log_path()
        log_path.parent.mkdir(parents=True)
        entries = [
            {"component": "store", "level": "INFO", "project": "a", "msg": "one"},
            {"component": "store", "level": "WARNING", "project": "b", "msg": "two"},
            {"component": "resolution", "level": "INFO", "project": "a", "msg": "three"},
        ]
        log_path.write_text("\n".join(json.dumps(e) for e in entries) + "\nnot json\n")

        assert '"two"' in get_filtered_logs(project="b")
        assert '"one"' not in get_filtered_logs(project="b")
        assert get_filtered_logs(component="resolution").count("\n") == 1
        assert get_filtered_logs(level="WARNING", project="a") == ""
        assert get_filtered_logs(lines=1).count("three") == 1

    def test_setup_logging_writes_json(self, data_home, restore_root_logger):
        config = Config()
        config.logging.level = "WARNING"
        config.logging.use_colors = False
        setup_logging(config)
        logging.getLogger("chatrank.store").debug("appended", extra={"ctx": {"id": "m1"}})
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = get_debug_log_path().read_text().splitlines()
        header = json.loads(lines[0])
        assert header["msg"] == "=== chatrank session started ==="
        assert header["ctx"]["config"]["window"]["min_tier"] == "LOW"
        assert header["ctx"]["config"]["logging"]["level"] == "WARNING"
        assert set(header["ctx"]) == {"session_start", "config"}
        last = json.loads(lines[-1])
        assert last["component"] == "store"
        assert last["ctx"] == {"id": "m1"}

    def test_setup_logging_console_only(self, data_home, restore_root_logger):
        config = Config()
        config.logging.debug_to_file = False
        setup_logging(config)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert handlers[0].level == logging.INFO
        assert isinstance(handlers[0].formatter, ConsoleFormatter)
        assert not get_debug_log_path().exists()

    def test_active_project_accessors(self):
        set_active_project("x")
        assert chatrank_logging.get_active_project() == "x"
        set_active_project(None)
        assert chatrank_logging.get_active_project() is None
