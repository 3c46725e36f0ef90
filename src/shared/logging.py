import logging
import sys

from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogRecordExporter

from .config import settings


def setup_logging(level: str | None = None) -> LoggerProvider:
    """Configure OpenTelemetry logging plus a plain stderr handler.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL.
    """
    level = (level or settings.LOG_LEVEL).upper()

    # 1. Setup OpenTelemetry Logger Provider
    logger_provider = LoggerProvider()
    if settings.OTEL_CONSOLE_EXPORT:
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(ConsoleLogRecordExporter()))
    set_logger_provider(logger_provider)

    # 2. Attach OTel LoggingHandler to Python's root logger
    handler = LoggingHandler(level=getattr(logging, level), logger_provider=logger_provider)

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)

    # Human readable output; stdout is left for the run summary
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root.addHandler(stream_handler)

    return logger_provider


logger = logging.getLogger("gmpki")
