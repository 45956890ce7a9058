import json
import logging

from observability import (
    DevelopmentFormatter,
    ProductionFormatter,
    configure_logging,
    log_event,
    request_id_ctx,
)


def test_log_event_sorts_fields_and_includes_request_id(caplog):
    caplog.set_level("INFO")
    token = request_id_ctx.set("req-9")
    try:
        log_event("release_created", project="Project 1", attempt=2, skipped=None)
    finally:
        request_id_ctx.reset(token)
    message = caplog.records[-1].message
    assert message == "attempt=2 event=release_created project=Project 1 request_id=req-9"


def test_log_event_redacts_secrets(caplog):
    caplog.set_level("INFO")
    log_event(
        "octopus_call_failed",
        level="warning",
        error="X-Octopus-ApiKey: API-ABCDEFGHIJKLMNOPQRSTU from https://octopus.example.com/api/projects?apikey=abc",
    )
    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "ABCDEFGHIJKLMNOPQRSTU" not in record.message
    assert "apikey=abc" not in record.message
    assert "https://octopus.example.com/..." in record.message


def test_configure_logging_is_idempotent():
    logger = configure_logging("development")
    configure_logging("production")
    named = [h for h in logger.handlers if h.get_name() == "octoargosync-default"]
    assert len(named) == 1
    assert isinstance(named[0].formatter, ProductionFormatter)
    configure_logging("")
    named = [h for h in logger.handlers if h.get_name() == "octoargosync-default"]
    assert isinstance(named[0].formatter, DevelopmentFormatter)


def test_production_formatter_writes_json():
    record = logging.LogRecord("octoargosync.api", logging.INFO, __file__, 1, "event=ping", None, None)
    entry = json.loads(ProductionFormatter().format(record))
    assert entry["level"] == "info"
    assert entry["logger"] == "octoargosync.api"
    assert entry["message"] == "event=ping"
    assert entry["timestamp"].endswith("Z")
