"""Tests for converge.utils.

Tests cover:
- retry_with_backoff: success, exhaustion, non-retryable errors, abortable sleep
- Canonical JSON and hashing
- ULID generation
- format_duration
- setup_logging handlers and StructuredFormatter
"""

import json
import logging
import sys

import pytest
from rich.logging import RichHandler

from converge.errors import PermanentProviderError, TransientProviderError
from converge.utils import (
    StructuredFormatter,
    canonical_json,
    format_duration,
    generate_ulid,
    retry_with_backoff,
    setup_logging,
    sha256_hex,
)


class Flaky:
    """Callable that raises the queued errors before returning 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


# =============================================================================
# RETRY
# =============================================================================


class TestRetryWithBackoff:
    """Tests for retry_with_backoff()."""

    def test_returns_first_success(self):
        sleeps = []
        assert retry_with_backoff(Flaky(), sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_backoff_grows(self):
        sleeps = []
        func = Flaky(TransientProviderError("1"), TransientProviderError("2"))
        result = retry_with_backoff(
            func, max_attempts=3, backoff_seconds=1.0, backoff_multiplier=3.0, sleep=sleeps.append,
        )
        assert result == "ok"
        assert func.calls == 3
        assert sleeps == [1.0, 3.0]

    def test_exhausted_raises_last_error(self):
        func = Flaky(TransientProviderError("1"), TransientProviderError("2"), TransientProviderError("3"))
        with pytest.raises(TransientProviderError, match="2"):
            retry_with_backoff(func, max_attempts=2, sleep=lambda s: None)
        assert func.calls == 2

    def test_non_retryable_propagates_immediately(self):
        func = Flaky(PermanentProviderError("denied"))
        with pytest.raises(PermanentProviderError):
            retry_with_backoff(
                func,
                should_retry=lambda e: isinstance(e, TransientProviderError),
                sleep=lambda s: pytest.fail("should not sleep"),
            )
        assert func.calls == 1

    def test_sleep_returning_true_aborts(self):
        func = Flaky(TransientProviderError("throttled"))
        with pytest.raises(TransientProviderError, match="throttled"):
            retry_with_backoff(func, max_attempts=5, sleep=lambda s: True)
        assert func.calls == 1

    def test_on_attempt_numbers(self):
        attempts = []
        retry_with_backoff(
            Flaky(TransientProviderError("x")), sleep=lambda s: None, on_attempt=attempts.append,
        )
        assert attempts == [1, 2]

    def test_logs_retries(self, caplog):
        logger = logging.getLogger("converge.test_retry")
        with caplog.at_level(logging.WARNING, logger="converge.test_retry"):
            retry_with_backoff(Flaky(TransientProviderError("slow")), sleep=lambda s: None, logger=logger)
        assert "Attempt 1/3 failed: slow. Retrying in 2s..." in caplog.text


# =============================================================================
# HASHING AND IDENTIFIERS
# =============================================================================


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert sha256_hex({"b": 1, "a": 2}) == sha256_hex({"a": 2, "b": 1})

    def test_values_matter(self):
        assert sha256_hex({"cidr": "10.0.0.0/16"}) != sha256_hex({"cidr": "10.1.0.0/16"})

    def test_hex_digest(self):
        digest = sha256_hex({})
        assert len(digest) == 64
        assert int(digest, 16) >= 0


class TestGenerateUlid:
    def test_format(self):
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert set(ulid) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")

    def test_unique(self):
        assert len({generate_ulid() for _ in range(100)}) == 100


class TestFormatDuration:
    @pytest.mark.parametrize("seconds,expected", [
        (0, "0s"),
        (45.9, "45s"),
        (83, "1m 23s"),
        (3725, "1h 2m 5s"),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


# =============================================================================
# LOGGING
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging()."""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        logger = logging.getLogger("converge")
        handlers, level = list(logger.handlers), logger.level
        yield
        for handler in logger.handlers:
            handler.close()
        logger.handlers = handlers
        logger.setLevel(level)

    def test_pretty_console(self):
        logger = setup_logging("DEBUG")
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], RichHandler)

    def test_structured_console(self):
        logger = setup_logging("INFO", log_format="structured")
        assert isinstance(logger.handlers[0].formatter, StructuredFormatter)

    def test_file_only(self, tmp_path):
        log_file = tmp_path / "logs" / "converge.log"
        logger = setup_logging("INFO", log_format="structured", log_file=log_file, console_output=False)
        assert len(logger.handlers) == 1

        logger.info("applied", extra={"resource": "net1", "event": "create"})
        logger.handlers[0].flush()

        record = json.loads(log_file.read_text().strip())
        assert record["message"] == "applied"
        assert record["resource"] == "net1"
        assert record["event"] == "create"
        assert record["logger"] == "converge"

    def test_repeated_setup_replaces_handlers(self):
        setup_logging("INFO")
        logger = setup_logging("WARNING")
        assert len(logger.handlers) == 1


class TestStructuredFormatter:
    def test_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("converge", logging.ERROR, __file__, 1, "failed", None, None)
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))
        assert data["level"] == "ERROR"
        assert "ValueError: boom" in data["exception"]
