"""
shipyard — unit tests for observability logging

Purpose
- Validate structured JSON logging with redaction, correlation metadata, and queue-backed reliability.

What this test file should cover
- JSON line validity and redaction guarantees, including live secret values.
- Correlation field propagation.
- structlog events routed through the same sink.
- Multi-threaded logging stability and shutdown flushing.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from shipyard.observability.logging import (
    LoggingConfig,
    configure_structlog,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    parse_log_level,
    setup_structured_logging,
    shutdown_logging,
)
from shipyard.security.redaction import REDACTED_VALUE, Redactor, SecretMasker

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

_RUN_ID = "run-01ARZ3NDEKTSV4RRFFQ69G5FAV"


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"shipyard.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


@pytest.mark.unit
def test_json_logging_redacts_patterns_and_keeps_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id=_RUN_ID, base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(stage="deploy", step="apply"):
        logger.info(
            "payload password=hunter2hunter2",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)
    assert handle.log_path == tmp_path / _RUN_ID / "orchestrator.jsonl"
    (event,) = _read_json_lines(handle.log_path)
    assert event["run_id"] == _RUN_ID
    assert event["stage"] == "deploy"
    assert event["step"] == "apply"
    assert "hunter2" not in json.dumps(event)
    assert event["fields"] == {"nested": {"password": REDACTED_VALUE, "safe": "ok"}}


@pytest.mark.unit
def test_live_secret_values_are_masked_at_emit_time(tmp_path: Path) -> None:
    logger_name = _logger_name()
    masker = SecretMasker()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=_RUN_ID,
            base_log_dir=tmp_path,
            logger_name=logger_name,
            redactor=Redactor(masker),
        )
    )
    logger = logging.getLogger(logger_name)

    with masker.masking(["kube-cluster-credential"]):
        logger.warning("connecting with %s", "kube-cluster-credential", extra={"detail": "kube-cluster-credential"})

    shutdown_logging(handle)
    text = handle.log_path.read_text(encoding="utf-8")
    assert "kube-cluster-credential" not in text
    (event,) = _read_json_lines(handle.log_path)
    assert event["message"] == f"connecting with {REDACTED_VALUE}"
    assert event["fields"] == {"detail": REDACTED_VALUE}


@pytest.mark.unit
def test_structlog_events_share_the_redacted_sink(tmp_path: Path) -> None:
    handle = setup_structured_logging(LoggingConfig(run_id=_RUN_ID, base_log_dir=tmp_path))
    configure_structlog()
    log = structlog.get_logger("shipyard.tests.structlog")

    with correlation_scope(stage="test"):
        log.info("stage_finished", status="succeeded", reason="token: abcdefghijklmnop")

    shutdown_logging(handle)
    events = _read_json_lines(handle.log_path)
    finished = [event for event in events if event["message"] == "stage_finished"]
    assert len(finished) == 1
    assert finished[0]["stage"] == "test"
    fields = finished[0]["fields"]
    assert isinstance(fields, dict)
    assert fields["status"] == "succeeded"
    assert "abcdefghijklmnop" not in json.dumps(finished[0])


@pytest.mark.unit
def test_exceptions_are_rendered_and_redacted(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id=_RUN_ID, base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    try:
        raise RuntimeError("failed with password=correcthorse")
    except RuntimeError:
        logger.exception("stage_internal_error")

    shutdown_logging(handle)
    (event,) = _read_json_lines(handle.log_path)
    assert "RuntimeError" in str(event["exception"])
    assert "correcthorse" not in str(event["exception"])


@pytest.mark.unit
def test_level_filtering_and_stdout_sink(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=_RUN_ID,
            base_log_dir=tmp_path,
            logger_name=logger_name,
            level="WARNING",
            log_to_stdout=True,
        )
    )
    logger = logging.getLogger(logger_name)
    logger.info("hidden")
    logger.warning("shown")

    shutdown_logging(handle)
    events = _read_json_lines(handle.log_path)
    assert [event["message"] for event in events] == ["shown"]
    assert '"message":"shown"' in capsys.readouterr().err


@pytest.mark.unit
def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id=_RUN_ID, base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    def _worker(index: int) -> None:
        with correlation_scope(stage=f"stage-{index}"):
            for line in range(25):
                logger.info("tick %d", line)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)
    events = _read_json_lines(handle.log_path)
    assert len(events) == 100
    assert {event["stage"] for event in events} == {"stage-0", "stage-1", "stage-2", "stage-3"}
    assert handle.dropped_records == 0


@pytest.mark.unit
def test_new_setup_replaces_active_handle(tmp_path: Path) -> None:
    first = setup_structured_logging(LoggingConfig(run_id=_RUN_ID, base_log_dir=tmp_path))
    second = setup_structured_logging(
        LoggingConfig(run_id="run-01ARZ3NDEKTSV4RRFFQ69G5FAW", base_log_dir=tmp_path)
    )

    assert first.is_shutdown
    assert get_active_logging_handle() is second
    shutdown_logging()
    assert get_active_logging_handle() is None


@pytest.mark.unit
def test_correlation_scope_restores_previous_context() -> None:
    with correlation_scope(run_id="r1", stage="build"):
        with correlation_scope(stage=None, step="login"):
            assert get_correlation_context() == {"run_id": "r1", "step": "login"}
        assert get_correlation_context() == {"run_id": "r1", "stage": "build"}
    assert get_correlation_context() == {}


@pytest.mark.unit
def test_invalid_configuration_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        setup_structured_logging(LoggingConfig(run_id=" ", base_log_dir=tmp_path))
    with pytest.raises(ValueError):
        setup_structured_logging(
            LoggingConfig(run_id=_RUN_ID, base_log_dir=tmp_path, log_filename="nested/log.jsonl")
        )
    with pytest.raises(ValueError):
        parse_log_level("CHATTY")
    assert parse_log_level("debug") == logging.DEBUG
