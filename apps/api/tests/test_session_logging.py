"""
Tests for structured logging of generation and learning events.
"""
import asyncio
import json
import logging
from unittest.mock import patch

import pytest

from core.config import settings
from core.logging import JSONFormatter, KeyValueFormatter, log_event, setup_logging


def make_record(fields=None, msg="Generated session gen_1"):
    record = logging.LogRecord("services.session_generation", logging.INFO, __file__, 10, msg, None, None)
    if fields is not None:
        record.extra_fields = fields
    return record


class TestFormatters:

    def test_json_merges_extra_fields(self):
        payload = json.loads(JSONFormatter().format(make_record({"session_id": "gen_1", "partial": False})))

        assert payload["message"] == "Generated session gen_1"
        assert payload["level"] == "INFO"
        assert payload["session_id"] == "gen_1"
        assert payload["partial"] is False

    def test_json_without_fields(self):
        payload = json.loads(JSONFormatter().format(make_record()))

        assert "session_id" not in payload

    def test_text_appends_pairs(self):
        line = KeyValueFormatter().format(make_record({"duration": 90, "success": 0.81}))

        assert line.endswith("Generated session gen_1 [duration=90 success=0.81]")

    def test_text_without_fields(self):
        assert KeyValueFormatter().format(make_record()).endswith("Generated session gen_1")


class TestSetupLogging:

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_overrides(self):
        root = setup_logging(level="debug", fmt="json")

        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_text_by_default(self):
        with patch.object(settings, "LOG_FORMAT", "text"), patch.object(settings, "ENVIRONMENT", "development"):
            root = setup_logging(level="info")

        assert isinstance(root.handlers[0].formatter, KeyValueFormatter)


class TestEvents:

    def test_log_event(self, caplog):
        logger = logging.getLogger("tests.events")
        with caplog.at_level(logging.INFO, logger="tests.events"):
            log_event(logger, "fold", folded=2)

        assert caplog.records[-1].extra_fields == {"folded": 2}

    def test_generation_logged(self, orchestrator, dev_request, caplog):
        with caplog.at_level(logging.INFO, logger="services.session_generation.orchestrator"):
            session = asyncio.run(orchestrator.generate(dev_request))

        events = [r for r in caplog.records if getattr(r, "extra_fields", {}).get("session_id") == session.id]
        assert len(events) == 1
        fields = events[0].extra_fields
        assert fields["user_id"] == dev_request.user_id
        assert fields["duration"] == session.template.estimated_duration
        assert fields["partial"] is False
        assert fields["degraded"] is None
