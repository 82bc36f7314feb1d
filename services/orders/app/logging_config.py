"""
Orders Service — ログ設定

すべてのレコードに現在束縛されているトレースの trace_id / span_id を付与する。
起動時に configure_logging() を一度だけ呼ぶ。
"""

import logging
import sys

from .tracing import current_trace

LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(trace_id)s,%(span_id)s] - %(message)s"
)


class TraceContextFilter(logging.Filter):
    """ログレコードに trace_id / span_id を埋め込む。未束縛なら "-"。"""

    def filter(self, record: logging.LogRecord) -> bool:
        trace = current_trace()
        record.trace_id = trace.trace_id if trace else "-"
        record.span_id = trace.span_id if trace else "-"
        return True


def configure_logging(log_level: str = "INFO") -> logging.Logger:
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(TraceContextFilter())
    root_logger.addHandler(handler)

    return root_logger
