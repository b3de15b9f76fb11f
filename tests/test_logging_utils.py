"""Tests for structured JSON logging."""

import json
import logging

from embedding_resilience.logging_utils import (
    EmbeddingLoggerAdapter,
    StructuredJsonFormatter,
    configure_structured_logging,
    get_embedding_logger,
)


def make_record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("embedding_resilience.test", logging.WARNING, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredJsonFormatter:
    def test_basic_fields(self):
        """Each record becomes one JSON object with the core fields."""
        payload = json.loads(StructuredJsonFormatter().format(make_record()))

        assert payload["level"] == "WARNING"
        assert payload["logger"] == "embedding_resilience.test"
        assert payload["message"] == "hello world"
        assert payload["timestamp"].endswith("+00:00")

    def test_extra_fields_included(self):
        """Custom attributes passed via extra are copied into the payload."""
        payload = json.loads(
            StructuredJsonFormatter().format(make_record(event_type="provider_call", item_count=3))
        )

        assert payload["event_type"] == "provider_call"
        assert payload["item_count"] == 3

    def test_unserializable_values_stringified(self):
        payload = json.loads(StructuredJsonFormatter().format(make_record(obj=object())))

        assert payload["obj"].startswith("<object object")


class TestLoggerHelpers:
    def test_configure_installs_single_handler(self):
        logger = configure_structured_logging(logging.DEBUG, "embedding_resilience.config_test")
        configure_structured_logging(logging.DEBUG, "embedding_resilience.config_test")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
        assert logger.level == logging.DEBUG

    def test_named_logger(self):
        assert get_embedding_logger("worker").name == "embedding_resilience.worker"

    def test_adapter_merges_extra(self, caplog):
        """Adapter context and per-call extra both reach the record."""
        adapter = EmbeddingLoggerAdapter(
            logging.getLogger("embedding_resilience.adapter_test"), {"server_id": "s1"}
        )

        with caplog.at_level(logging.INFO, logger="embedding_resilience.adapter_test"):
            adapter.info("queued", extra={"collection_id": "c1"})

        record = caplog.records[-1]
        assert record.server_id == "s1"
        assert record.collection_id == "c1"
