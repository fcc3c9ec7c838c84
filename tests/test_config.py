import json
import logging
import logging.handlers

import pytest

import tickr


def test_missing_config_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    cfg = tickr.load_config(str(tmp_path / "absent.yaml"))
    assert cfg.db_path == str(tmp_path / "data" / "tickr" / "tickr.db")
    assert cfg.tick_seconds == 0.25
    assert cfg.log_level == "ERROR"
    assert cfg.log_file is None
    assert cfg.style == {}


def test_config_values_are_read(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "db_path: /tmp/elsewhere.db\n"
        "tick_seconds: 1\n"
        "log_level: debug\n"
        "log_file: /tmp/tickr-test.log\n"
        "style:\n"
        "  tab.active: 'bold #ff0000'\n",
        encoding="utf-8",
    )
    cfg = tickr.load_config(str(path))
    assert cfg.db_path == "/tmp/elsewhere.db"
    assert cfg.tick_seconds == 1.0
    assert cfg.log_level == "debug"
    assert cfg.log_file == "/tmp/tickr-test.log"
    assert cfg.style == {"tab.active": "bold #ff0000"}


@pytest.mark.parametrize('body, message', [
    ("- just\n- a list\n", "top level must be a mapping"),
    ("tick_seconds: 0\n", "tick_seconds must be positive"),
    ("tick_seconds: soon\n", "tick_seconds must be a number"),
    ("style: dark\n", "'style' must be a mapping"),
])
def test_invalid_config_raises_value_error(tmp_path, body, message):
    path = tmp_path / "config.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError) as exc:
        tickr.load_config(str(path))
    assert message in str(exc.value)


def test_ui_state_round_trip(tmp_path):
    path = tmp_path / "nested" / "ui.json"
    tickr.save_ui_state(str(path), {"view": "Timeline"})
    assert json.loads(path.read_text(encoding="utf-8")) == {"view": "Timeline"}
    assert tickr.load_ui_state(str(path)) == {"view": "Timeline"}


def test_ui_state_tolerates_bad_files(tmp_path):
    assert tickr.load_ui_state(str(tmp_path / "missing.json")) == {}
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert tickr.load_ui_state(str(bad)) == {}
    bad.write_text("[1, 2]", encoding="utf-8")
    assert tickr.load_ui_state(str(bad)) == {}


def test_setup_logging_uses_rotating_file(tmp_path):
    saved = list(tickr.logger.handlers)
    try:
        log_path = tmp_path / "logs" / "tickr.log"
        tickr.setup_logging(str(log_path), "warning")
        (handler,) = tickr.logger.handlers
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert handler.level == logging.WARNING
        assert handler.maxBytes == 2000000
        tickr.logger.warning("hello from test")
        handler.flush()
        assert "WARNING hello from test" in log_path.read_text(encoding="utf-8")

        tickr.setup_logging(str(log_path), "nonsense")
        assert tickr.logger.handlers[0].level == logging.ERROR
    finally:
        for h in list(tickr.logger.handlers):
            tickr.logger.removeHandler(h)
            h.close()
        for h in saved:
            tickr.logger.addHandler(h)
