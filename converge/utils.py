"""
Utility functions for converge.

Includes logging, retries, hashing, identifiers, and the shared console.
"""

import hashlib
import json
import logging
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for converge.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        log_file: Optional path to a log file
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("converge")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_time=False
            )
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())

        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "resource"):
            log_data["resource"] = record.resource
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def retry_with_backoff(
    func: Callable[[], Any],
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    backoff_multiplier: float = 2.0,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    sleep: Callable[[float], Any] = time.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Retry a function with exponential backoff.

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        should_retry: Predicate deciding whether an exception is retryable.
                      Non-retryable exceptions propagate immediately.
        sleep: Sleep function. Returning True aborts further attempts
               (used for cancellable waits).
        on_attempt: Called with the attempt number before each call
        logger: Logger for retry messages

    Returns:
        Result of successful function call

    Raises:
        Exception: The last exception once retries are exhausted, or the
                   first non-retryable one
    """
    attempt = 1
    wait_time = backoff_seconds

    while True:
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return func()

        except Exception as e:
            if not should_retry(e):
                raise

            if attempt >= max_attempts:
                if logger:
                    logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {wait_time:g}s..."
                )

            if sleep(wait_time) is True:
                raise
            wait_time *= backoff_multiplier
            attempt += 1


def canonical_json(data: Any) -> str:
    """Serialize to canonical JSON: sorted keys, compact encoding."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(data: Any) -> str:
    """SHA256 hex digest of the canonical JSON form of data."""
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"
