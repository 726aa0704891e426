"""Tests for localdiffuse.log (stdout, file and host sink routing)."""

from __future__ import annotations

import pytest

from localdiffuse import log
from localdiffuse.log import LogLevel


class TestParseLevel:
    @pytest.mark.parametrize("name,level", [
        ("debug", LogLevel.DEBUG),
        (" Info ", LogLevel.INFO),
        ("WARNING", LogLevel.WARNING),
        ("error", LogLevel.ERROR),
    ])
    def test_names(self, name, level):
        assert log.parse_level(name) is level

    def test_unknown(self):
        with pytest.raises(ValueError):
            log.parse_level("verbose")


class TestRouting:
    """Where lines end up."""

    def test_stdout_threshold(self, capsys):
        log.set_stdout_level(LogLevel.WARNING)
        log.info("quiet line")
        log.warning("loud line")
        out = capsys.readouterr().out
        assert "quiet line" not in out
        assert "[WARNING] loud line" in out

    def test_sink_replaces_stdout(self, capsys):
        received = []
        log.set_sink(lambda line, level: received.append((line, level)))
        log.debug("below sink level")
        log.info("to the sink")
        assert capsys.readouterr().out == ""
        assert len(received) == 1
        assert received[0][1] is LogLevel.INFO
        assert received[0][0].endswith("[INFO] to the sink")

    def test_clear_sink_restores_stdout(self, capsys):
        log.set_sink(lambda line, level: None)
        log.clear_sink()
        log.info("back on stdout")
        assert "back on stdout" in capsys.readouterr().out

    def test_sink_may_log(self):
        received = []

        def sink(line, level):
            received.append(line)
            if len(received) == 1:
                log.info("nested")

        log.set_sink(sink)
        log.info("outer")
        assert len(received) == 2

    def test_file_gets_every_level(self, tmp_path):
        path = tmp_path / "sub" / "app.log"
        log.init_file(str(path))
        log.set_stdout_level(LogLevel.ERROR)
        log.set_sink(lambda line, level: None, min_level=LogLevel.ERROR)
        log.debug("debug line")
        log.warning("warning line")
        log.close_file()
        text = path.read_text(encoding="utf-8")
        assert "[DEBUG] debug line" in text
        assert "[WARNING] warning line" in text
        assert log.get_log_path() is None

    def test_log_exception(self, capsys):
        try:
            raise KeyError("missing")
        except KeyError as ex:
            log.log_exception(ex, "while testing")
        out = capsys.readouterr().out
        assert "[ERROR] while testing" in out
        assert "KeyError" in out
        assert "Traceback" in out
