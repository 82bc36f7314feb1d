"""
Orders Service — Remote Resource Fetcher

リモートサービスへの GET / POST を呼び出し元をブロックせずに発行し、
タイムアウト付きで join できるハンドル (FetchHandle) を返す。

  fetch_one  : GET  HAL エンベロープ (_links 付き) の単一リソース
  fetch_list : GET  素の JSON 配列
  post_one   : POST JSON ボディ、応答を shape で検証

join(timeout) の結果:
  成功                         → 値
  timeout 秒以内に終わらない    → TimedOut   (タスクはキャンセルしない)
  通信エラー / 非 2xx / 形式不一致 → FetchFailed(cause)

リトライはしない。
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Generic, Protocol, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter

from .pool import BoundedTaskPool
from .tracing import TraceContext, bind_trace

logger = logging.getLogger(__name__)

T = TypeVar("T")

HAL_JSON = "application/hal+json"
JSON = "application/json"

# HAL エンベロープのうち、エンティティ本体ではないキー
_HAL_KEYS = ("_links", "_embedded")


class TimedOut(Exception):
    """join の待ち時間が上限を超えた"""


class FetchFailed(Exception):
    """通信エラー、または応答の形式がモデルと一致しない"""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class FetchHandle(Generic[T]):
    """発行済みのリモート呼び出しに対する join 可能なハンドル"""

    def __init__(self, task: "asyncio.Task[T]", description: str):
        self._task = task
        self.description = description

    def done(self) -> bool:
        return self._task.done()

    async def join(self, timeout: float) -> T:
        """
        最大 timeout 秒だけ待って結果を返す。

        shield しているので、待ちがタイムアウトしてもタスク自体は
        走り続ける。
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError as e:
            raise TimedOut(
                f"{self.description} did not complete within {timeout}s"
            ) from e


class ResourceFetcher(Protocol):
    """応答の形で型付けされたリモート呼び出しの能力"""

    async def fetch_one(
        self, uri: str, shape: type[T], trace: TraceContext
    ) -> FetchHandle[T]: ...

    async def fetch_list(
        self, uri: str, shape: type[T], trace: TraceContext
    ) -> FetchHandle[list[T]]: ...

    async def post_one(
        self,
        uri: str,
        body: Any,
        shape: type[T],
        trace: TraceContext,
        optional: bool = False,
    ) -> FetchHandle[T | None]: ...


def unwrap_resource(payload: Any) -> Any:
    """HAL エンベロープからエンティティ本体だけを取り出す。"""
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a resource object, got {type(payload).__name__}")
    return {k: v for k, v in payload.items() if k not in _HAL_KEYS}


def _encode_body(body: Any) -> Any:
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json", by_alias=True)
    return body


class HttpResourceFetcher:
    """httpx.AsyncClient を使った ResourceFetcher の実装"""

    def __init__(self, client: httpx.AsyncClient, pool: BoundedTaskPool):
        self.client = client
        self.pool = pool

    async def fetch_one(
        self, uri: str, shape: type[T], trace: TraceContext
    ) -> FetchHandle[T]:
        adapter = TypeAdapter(shape)

        def parse(response: httpx.Response) -> T:
            return adapter.validate_python(unwrap_resource(response.json()))

        return await self._issue("GET", uri, None, HAL_JSON, parse, trace)

    async def fetch_list(
        self, uri: str, shape: type[T], trace: TraceContext
    ) -> FetchHandle[list[T]]:
        adapter = TypeAdapter(list[shape])  # type: ignore[valid-type]

        def parse(response: httpx.Response) -> list[T]:
            return adapter.validate_json(response.content)

        return await self._issue("GET", uri, None, JSON, parse, trace)

    async def post_one(
        self,
        uri: str,
        body: Any,
        shape: type[T],
        trace: TraceContext,
        optional: bool = False,
    ) -> FetchHandle[T | None]:
        """
        optional=True のとき、空・null・解釈できない応答は None を返す。
        (決済応答はこの扱いで、None は呼び出し側で失敗として判定する)
        """
        adapter = TypeAdapter(shape)

        def parse(response: httpx.Response) -> T | None:
            if not optional:
                return adapter.validate_json(response.content)
            if not response.content.strip():
                return None
            try:
                payload = response.json()
                if payload is None:
                    return None
                return adapter.validate_python(payload)
            except ValueError:
                logger.warning("Unparseable response body from %s, treating as absent", uri)
                return None

        return await self._issue("POST", uri, _encode_body(body), JSON, parse, trace)

    # ── 内部実装 ─────────────────────────────────

    async def _issue(
        self,
        method: str,
        uri: str,
        json_body: Any,
        accept: str,
        parse: Callable[[httpx.Response], T],
        parent: TraceContext,
    ) -> FetchHandle[T]:
        # 発行時点で子スパンを確定させ、タスクへ明示的に渡す
        span = parent.child()
        description = f"{method} {uri}"

        def factory() -> Awaitable[T]:
            return self._execute(method, uri, json_body, accept, parse, span)

        task = await self.pool.submit(factory, name=description)
        return FetchHandle(task, description)

    async def _execute(
        self,
        method: str,
        uri: str,
        json_body: Any,
        accept: str,
        parse: Callable[[httpx.Response], T],
        span: TraceContext,
    ) -> T:
        with bind_trace(span):
            logger.info("%s request starting - %s", method, uri)
            started = time.perf_counter()
            headers = {"Accept": accept, **span.to_headers()}
            try:
                if json_body is None:
                    response = await self.client.request(method, uri, headers=headers)
                else:
                    response = await self.client.request(
                        method, uri, headers=headers, json=json_body
                    )
                response.raise_for_status()
                result = parse(response)
            except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
                duration_ms = (time.perf_counter() - started) * 1000
                logger.error(
                    "%s request failed - %s, duration: %.1fms, error: %s",
                    method, uri, duration_ms, e,
                )
                raise FetchFailed(f"{method} {uri} failed: {e}", cause=e) from e

            duration_ms = (time.perf_counter() - started) * 1000
            logger.info(
                "%s request completed - %s, duration: %.1fms, status: %d",
                method, uri, duration_ms, response.status_code,
            )
            return result
