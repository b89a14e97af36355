"""Logging setup: stdlib handlers on stderr plus structlog JSON rendering.

MCP uses stdout for protocol frames, so nothing here may ever write to it.
"""

import logging
import sys
from typing import Any

import structlog


class SafeStreamHandler(logging.StreamHandler[Any]):
    """Stream handler that gracefully handles broken pipes."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        except (BrokenPipeError, ConnectionResetError):
            # Client went away; nowhere left to report to
            pass
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging and structlog for the whole process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[SafeStreamHandler(sys.stderr)],
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Suppress third-party library logging to reduce noise
    logging.getLogger('aiohttp').setLevel(logging.ERROR)
    logging.getLogger('mcp').setLevel(logging.WARNING)
