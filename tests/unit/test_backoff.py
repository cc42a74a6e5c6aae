"""Tests for Backoff Executor."""

from unittest.mock import MagicMock

import pytest
import requests

from app.utils.backoff import BackoffExecutor, get_status_code, is_retriable, raise_for_status
from app.utils.error_handler import (
    ConfigurationError,
    MediaProcessError,
    QualityRejectedError,
    TransientServiceError,
)


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"status {status_code}")
        self.status_code = status_code


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(logger, sleeps):
    return BackoffExecutor(logger, max_attempts=2, base_delay=0.6, jitter=0.15, sleep=sleeps.append, rand=lambda: 0.0)


def test_returns_first_success_without_sleeping(executor, sleeps):
    assert executor.execute(lambda: "ok") == "ok"
    assert sleeps == []


def test_retries_transient_errors_with_exponential_delays(executor, sleeps):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StatusError(503)
        return "done"

    assert executor.execute(flaky) == "done"
    assert len(calls) == 3
    assert sleeps == pytest.approx([0.6, 1.2])


def test_raises_last_error_after_max_attempts_plus_one(executor, sleeps):
    op = MagicMock(side_effect=StatusError(429))
    with pytest.raises(StatusError):
        executor.execute(op)
    assert op.call_count == 3
    assert len(sleeps) == 2


def test_fatal_4xx_is_not_retried(executor, sleeps):
    op = MagicMock(side_effect=StatusError(400))
    with pytest.raises(StatusError):
        executor.execute(op)
    assert op.call_count == 1
    assert sleeps == []


def test_per_call_overrides(executor, sleeps):
    op = MagicMock(side_effect=[StatusError(500), "ok"])
    assert executor.execute(op, max_attempts=5, base_delay=0.7) == "ok"
    assert sleeps == pytest.approx([0.7])


def test_jitter_is_added(logger):
    sleeps = []
    ex = BackoffExecutor(logger, base_delay=1.0, jitter=0.15, sleep=sleeps.append, rand=lambda: 1.0)
    op = MagicMock(side_effect=[StatusError(502), "ok"])
    ex.execute(op)
    assert sleeps == pytest.approx([1.15])


@pytest.mark.parametrize(
    "error,expected",
    [
        (Exception("no status"), True),
        (StatusError(429), True),
        (StatusError(500), True),
        (StatusError(599), True),
        (StatusError(404), False),
        (Exception("read ECONNRESET"), True),
        (requests.ConnectionError("down"), True),
        (ConfigurationError("missing key"), False),
        (MediaProcessError("encode", 1, "boom"), False),
        (QualityRejectedError("rejected"), False),
        (TransientServiceError("flaky", status_code=503), True),
    ],
)
def test_is_retriable(error, expected):
    assert is_retriable(error) is expected


def test_get_status_code_reads_response_attribute():
    response = MagicMock()
    response.status_code = 502
    error = requests.HTTPError("bad gateway", response=response)
    assert get_status_code(error) == 502
    assert get_status_code(Exception("plain")) is None


def _response(status, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    return response


def test_raise_for_status_taxonomy():
    raise_for_status(_response(200), "svc")

    with pytest.raises(TransientServiceError) as exc:
        raise_for_status(_response(429, "slow down"), "svc")
    assert exc.value.status_code == 429

    with pytest.raises(TransientServiceError):
        raise_for_status(_response(503), "svc")

    with pytest.raises(QualityRejectedError) as exc:
        raise_for_status(_response(422, "bad media"), "svc")
    assert "bad media" in str(exc.value)
