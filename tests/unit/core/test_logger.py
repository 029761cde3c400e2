"""
Unit tests for core.logger module.

Tests:
- format_kv_pairs() escaping and truncation
- Logger levels, bound context and JSON output
- StructuredFormatter output for Logger and plain stdlib records
"""

import json
import logging

import pytest

from uptimebrotr.core.logger import Logger, StructuredFormatter, format_kv_pairs


class TestFormatKvPairs:
    """Key-value pairs formatting and escaping."""

    def test_simple(self):
        assert format_kv_pairs({"key": "hello", "n": 3}) == " key=hello n=3"

    def test_quoting(self):
        assert format_kv_pairs({"key": "timed out"}) == ' key="timed out"'
        assert format_kv_pairs({"key": 'say "hi"'}) == ' key="say \\"hi\\""'
        assert format_kv_pairs({"key": ""}) == ' key=""'

    def test_truncation(self):
        result = format_kv_pairs({"body": "x" * 20}, max_value_length=5)
        assert result == " body=xxxxx...<truncated 15 chars>"

    def test_empty(self):
        assert format_kv_pairs({}) == ""


class TestLogger:
    """Logger output through caplog."""

    def test_levels(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = Logger("test_levels")
        with caplog.at_level(logging.DEBUG, logger="test_levels"):
            logger.debug("d")
            logger.info("i")
            logger.warning("w")
            logger.error("e")
            logger.critical("c")
        assert [r.levelno for r in caplog.records] == [10, 20, 30, 40, 50]

    def test_structured_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = Logger("test_fields")
        with caplog.at_level(logging.INFO, logger="test_fields"):
            logger.info("probe_completed", probe="comment_fetch", latency=1.2)
        record = caplog.records[0]
        assert record.getMessage() == "probe_completed"
        assert record.structured_kv == {"probe": "comment_fetch", "latency": 1.2}

    def test_bind(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = Logger("test_bind").bind(target="https://ipfs.io")
        assert logger.name == "test_bind"
        with caplog.at_level(logging.INFO, logger="test_bind"):
            logger.bind(probe="x").info("probe_failed", reason="timeout")
        assert caplog.records[0].structured_kv == {
            "target": "https://ipfs.io",
            "probe": "x",
            "reason": "timeout",
        }

    def test_long_values_truncated(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = Logger("test_truncate", max_value_length=10)
        with caplog.at_level(logging.INFO, logger="test_truncate"):
            logger.info("msg", body="y" * 30)
        assert caplog.records[0].structured_kv["body"].startswith("yyyyyyyyyy...<truncated")

    def test_json_output(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = Logger("test_json", json_output=True)
        with caplog.at_level(logging.INFO, logger="test_json"):
            logger.info("cycle_completed", duration=1.5)
        data = json.loads(caplog.records[0].getMessage())
        assert data["message"] == "cycle_completed"
        assert data["level"] == "info"
        assert data["service"] == "test_json"
        assert data["duration"] == 1.5

    def test_exception(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = Logger("test_exception")
        with caplog.at_level(logging.ERROR, logger="test_exception"):
            try:
                raise ValueError("boom")
            except ValueError:
                logger.exception("failed")
        assert caplog.records[0].exc_info is not None


class TestStructuredFormatter:
    def test_formats_structured_record(self) -> None:
        record = logging.LogRecord("monitor", logging.INFO, __file__, 1, "tick", None, None)
        record.structured_kv = {"loop": "gateways", "reason": "timed out"}
        assert StructuredFormatter().format(record) == (
            'info monitor tick loop=gateways reason="timed out"'
        )

    def test_formats_plain_record(self) -> None:
        record = logging.LogRecord("utils", logging.DEBUG, __file__, 1, "x=%s", ("1",), None)
        assert StructuredFormatter().format(record) == "debug utils x=1"
