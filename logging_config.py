"""Centralized logging configuration with optional Supabase shipping.

This module provides:
- PlainFormatter for stderr output
- JSONFormatter producing structured entries ([TAG] prefix split out)
- SupabaseHandler for batched remote log collection
"""

import atexit
import logging
import os
import re
import sys
import threading
from queue import Queue, Empty
from typing import Optional

_TAG_RE = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


class JSONFormatter(logging.Formatter):
    """Structured formatter; returns a dict ready for insertion."""

    def __init__(self, instance_name: str = None):
        super().__init__()
        self.instance_name = instance_name or "unknown"

    def format(self, record: logging.LogRecord) -> dict:
        # [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = _TAG_RE.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "instance": self.instance_name,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return log_entry


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class SupabaseHandler(logging.Handler):
    """Logging handler that ships records to a Supabase ``logs`` table.

    ``emit`` only enqueues. A worker thread sends batches every
    flush_interval seconds, or as soon as batch_size records are waiting,
    so callers on the event loop never block on the insert.
    """

    def __init__(
        self,
        supabase_client,
        instance_name: str,
        batch_size: int = 20,
        flush_interval: float = 10.0,
        table: str = "logs",
    ):
        super().__init__()
        self.supabase = supabase_client
        self.instance_name = instance_name
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.table = table

        self._queue: Queue = Queue()
        self._wake = threading.Event()
        self._closed = False
        self._worker = threading.Thread(target=self._run, name="supabase-log-shipper", daemon=True)
        self._worker.start()

        atexit.register(self.close)

    def emit(self, record: logging.LogRecord):
        try:
            formatter = self.formatter if isinstance(self.formatter, JSONFormatter) else JSONFormatter(self.instance_name)
            self._queue.put(formatter.format(record))
            if self._queue.qsize() >= self.batch_size:
                self._wake.set()
        except Exception:
            self.handleError(record)

    def _run(self):
        while not self._closed:
            self._wake.wait(self.flush_interval)
            self._wake.clear()
            self._send_pending()

    def _next_batch(self) -> list:
        batch = []
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        return batch

    def _send_pending(self):
        batch = self._next_batch()
        while batch:
            if self.supabase:
                try:
                    self.supabase.table(self.table).insert(batch).execute()
                except Exception as e:
                    # stderr only, logging here would recurse
                    print(f"[WARNING] Failed to send logs to Supabase: {e}", file=sys.stderr)
            batch = self._next_batch()

    def flush(self):
        """Send everything queued so far from the calling thread."""
        self._send_pending()

    def close(self):
        """Stop the worker and send whatever is left."""
        if not self._closed:
            self._closed = True
            self._wake.set()
            self._worker.join(timeout=self.flush_interval)
            self._send_pending()
        super().close()


_supabase_handler: Optional[SupabaseHandler] = None


def setup_logging(
    instance_name: str = None,
    supabase_client=None,
    level: str = None,
) -> logging.Logger:
    """Configure root logging.

    Args:
        instance_name: Name identifying this relay instance in shipped logs.
        supabase_client: Supabase client for remote logging (optional).
        level: Log level name; defaults to LOG_LEVEL or INFO.

    Returns:
        Configured root logger.
    """
    global _supabase_handler

    instance_name = instance_name or os.getenv("RELAY_INSTANCE_NAME", "auth-relay")
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    supabase_enabled = False
    if supabase_client:
        try:
            _supabase_handler = SupabaseHandler(
                supabase_client=supabase_client,
                instance_name=instance_name,
            )
            _supabase_handler.setLevel(logging.INFO)
            _supabase_handler.setFormatter(JSONFormatter(instance_name))
            root_logger.addHandler(_supabase_handler)
            supabase_enabled = True
        except Exception as e:
            print(f"[WARNING] Supabase logging setup failed: {e}", file=sys.stderr)

    # Supabase uses httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if supabase_enabled:
        logger.info(f"[STARTUP] Supabase logging enabled for instance: {instance_name}")
    else:
        logger.info("[STARTUP] Supabase logging disabled (no client)")

    return root_logger


def flush_logs():
    """Manually flush any pending logs to Supabase."""
    if _supabase_handler:
        _supabase_handler.flush()
