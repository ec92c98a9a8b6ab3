from __future__ import annotations

import logging

from storyrelay.core.security import redact_secrets


class RedactionFilter(logging.Filter):
    """Log filter that masks provider keys before output."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_secrets(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True


def setup_logging(level: str) -> None:
    """Configure application logging with secret redaction."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Handler-level so records propagated from library loggers are filtered too.
    redaction = RedactionFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(redaction)
