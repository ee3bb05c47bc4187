import logging

import pytest

from app.core.log_context import bind_logger, resolve_request_id


def test_bound_logger_prefixes_context(caplog: pytest.LogCaptureFixture) -> None:
    log = bind_logger(logging.getLogger("app.tests"), request_id="req-1", case_id=None)

    with caplog.at_level(logging.INFO, logger="app.tests"):
        log.bind(simulation_id="sim-1").info("Webhook processed score=%s", 64)

    record = caplog.records[-1]
    assert record.getMessage() == "[request_id=req-1 simulation_id=sim-1] Webhook processed score=64"
    assert record.request_id == "req-1"


def test_resolve_request_id_prefers_header() -> None:
    assert resolve_request_id({"x-request-id": " abc "}) == "abc"
    assert len(resolve_request_id({})) == 36
