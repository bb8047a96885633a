import json
import logging

import pytest

from market_pipeline.config import PipelineConfig
from market_pipeline.logging_config import (
    CORRELATION_ID_CTX,
    CorrelationIdFilter,
    JsonFormatter,
    log_config,
    setup_logging,
)


def _record(msg='cache.refresh_error', **extra):
    record = logging.makeLogRecord({'name': 'market_pipeline.cache', 'levelname': 'WARNING', 'msg': msg})
    record.__dict__.update(extra)
    return record


@pytest.mark.unit
def test_json_formatter_includes_correlation_id_and_extra_fields():
    token = CORRELATION_ID_CTX.set('refresh-7')
    try:
        record = _record(event='cache_refresh_error', key="('listing', 1, 50)")
        CorrelationIdFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        CORRELATION_ID_CTX.reset(token)
    assert payload['msg'] == 'cache.refresh_error'
    assert payload['correlation_id'] == 'refresh-7'
    assert payload['event'] == 'cache_refresh_error'
    assert payload['key'] == "('listing', 1, 50)"
    assert 'args' not in payload


@pytest.mark.unit
def test_setup_logging_console_only(monkeypatch):
    monkeypatch.setenv('LOG_FORMAT', 'json')
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        setup_logging('debug', log_to_file=False)
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers, level = saved[0], saved[1]
        root.setLevel(level)


@pytest.mark.unit
def test_log_config_dumps_every_field(caplog):
    with caplog.at_level(logging.INFO):
        log_config(PipelineConfig())
    assert any('min_results_threshold: 5' in r.getMessage() for r in caplog.records)
