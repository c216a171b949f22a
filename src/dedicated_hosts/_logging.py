"""Logging for dedicated-hosts.

The engine is a library: it attaches a NullHandler to its root logger and
never installs other handlers on its own. Applications hosting the engine
call configure_logging() to get stderr output.

Level control:
    DEDICATED_HOSTS_LOG_LEVEL=DEBUG  (read once at import)

Output format:
    INFO [2026-10-18 10:02:54] dedicated_hosts.engine - Found host for VM host_id=/subscriptions/... vm_name=vm-1

Engine modules pass placement context (host_id, host_group, vm_name,
lock_key, ...) through ``extra=``. ContextFormatter appends those fields as
sorted key=value pairs so a placement can be followed in plain stderr.

Placement loops log from many concurrent coroutines. Records go through a
bounded QueueHandler; a QueueListener thread drains them to
click.echo(err=True). A full queue drops the record and counts it.
"""

import logging
import logging.handlers
import os
import queue
from typing import Any

import click

LIBRARY_LOGGER_NAME: str = "dedicated_hosts"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = os.environ.get("DEDICATED_HOSTS_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_LEVEL_STYLES: dict[int, dict[str, Any]] = {
    logging.ERROR: {"fg": "red"},
    logging.WARNING: {"fg": "yellow"},
    logging.INFO: {},
}


def _style_for(levelno: int) -> dict[str, Any]:
    for threshold, style in _LEVEL_STYLES.items():
        if levelno >= threshold:
            return style
    return {"dim": True}


class ContextFormatter(logging.Formatter):
    """Formatter that appends extra= fields as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if not fields:
            return line
        pairs = " ".join(f"{key}={fields[key]}" for key in sorted(fields))
        first, sep, rest = line.partition("\n")
        return f"{first} {pairs}{sep}{rest}"


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr via click.echo, styled by level.

    Runs on the QueueListener thread. click strips ANSI styling when stderr
    is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = ContextFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, **_style_for(record.levelno)), err=True)
        except BlockingIOError:
            pass  # stderr buffer full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the emitting coroutine."""

    def __init__(self, capacity: int = _QUEUE_CAPACITY, *, start: bool = True) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=capacity)
        super().__init__(q)
        self.dropped = 0
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._started = start
        if start:
            self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Same-process queue, no pickling needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def close(self) -> None:
        if self._started:
            self._listener.stop()
            self._started = False
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the dedicated_hosts hierarchy."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for application entry points.

    Idempotent: adds at most one _NonBlockingHandler. Applications that
    install their own handlers are unaffected.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
