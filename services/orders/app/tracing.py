"""
Orders Service — トレースコンテキスト

相関 ID (trace_id / span_id) を明示的な値 TraceContext として扱う。

  呼び出し元                       フェッチタスク
  ┌──────────────┐  child() を     ┌──────────────────────┐
  │ TraceContext │ ── 引数で渡す ─▶│ bind_trace(child)    │
  │ (ワークフロー)│                 │  ├─ ログに span_id   │
  └──────────────┘                 │  └─ traceparent / B3 │
                                   └──────────────────────┘

スレッドローカルの capture/restore は使わない。タスク生成時に
値を渡し、タスク内で ContextVar に束縛して、終了時に元へ戻す。
ContextVar はログレコードへの埋め込みにだけ使う。
"""

import logging
import secrets
import time
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_current_trace: ContextVar["TraceContext | None"] = ContextVar("current_trace", default=None)


def _new_trace_id() -> str:
    return secrets.token_hex(16)


def _new_span_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class TraceContext:
    """1 つのスパンを表す不変値"""

    trace_id: str = field(default_factory=_new_trace_id)
    span_id: str = field(default_factory=_new_span_id)
    parent_span_id: str | None = None
    sampled: bool = True

    @classmethod
    def new_root(cls) -> "TraceContext":
        return cls()

    def child(self) -> "TraceContext":
        """同じ trace_id を持つ子スパンを作る。"""
        return TraceContext(
            trace_id=self.trace_id,
            parent_span_id=self.span_id,
            sampled=self.sampled,
        )

    def to_headers(self) -> dict[str, str]:
        """W3C traceparent と B3 (multi header) の両形式で伝播する。"""
        flag = "1" if self.sampled else "0"
        headers = {
            "traceparent": f"00-{self.trace_id}-{self.span_id}-0{flag}",
            "X-B3-TraceId": self.trace_id,
            "X-B3-SpanId": self.span_id,
            "X-B3-Sampled": flag,
        }
        if self.parent_span_id:
            headers["X-B3-ParentSpanId"] = self.parent_span_id
        return headers

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "TraceContext | None":
        """
        受信ヘッダからトレースを復元する。

        traceparent を優先し、なければ B3 を見る。どちらも無い、
        または壊れている場合は None。
        返す値は受信したスパンの子スパン。
        """
        lowered = {k.lower(): v for k, v in headers.items()}

        traceparent = lowered.get("traceparent")
        if traceparent:
            parts = traceparent.strip().split("-")
            if len(parts) == 4 and len(parts[1]) == 32 and len(parts[2]) == 16:
                try:
                    sampled = bool(int(parts[3], 16) & 1)
                except ValueError:
                    sampled = True
                return cls(trace_id=parts[1], span_id=parts[2], sampled=sampled).child()

        trace_id = lowered.get("x-b3-traceid")
        span_id = lowered.get("x-b3-spanid")
        if trace_id and span_id:
            sampled = lowered.get("x-b3-sampled", "1") != "0"
            return cls(trace_id=trace_id, span_id=span_id, sampled=sampled).child()

        return None


def current_trace() -> TraceContext | None:
    return _current_trace.get()


@contextmanager
def bind_trace(trace: TraceContext) -> Iterator[TraceContext]:
    """ブロックの間だけ trace を現在のコンテキストに束縛する。"""
    token = _current_trace.set(trace)
    try:
        yield trace
    finally:
        _current_trace.reset(token)


@asynccontextmanager
async def traced_operation(
    name: str,
    *,
    db_operation: str,
    collection: str,
    **attributes: object,
) -> AsyncIterator[None]:
    """
    永続化操作を明示的に包むトレース用ラッパー

    現在のトレースの子スパンを束縛し、操作名・所要時間・失敗をログに出す。
    例外はそのまま再送出する。
    """
    parent = current_trace() or TraceContext.new_root()
    with bind_trace(parent.child()):
        logger.info(
            "%s starting (db.operation=%s, db.collection=%s) %s",
            name, db_operation, collection, attributes or "",
        )
        started = time.perf_counter()
        try:
            yield
        except Exception:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.error("%s failed after %.1fms", name, duration_ms)
            raise
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info("%s completed in %.1fms", name, duration_ms)
