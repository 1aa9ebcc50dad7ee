"""
HTTP 流适配：把 httpx 的 streaming response 转换为 `ChatStreamEvent`。

范围：
- 只做 SSE 行分帧（取 `data:` 行）与状态码检查；
- 不做重试/退避、鉴权与请求体构造（由宿主负责）。
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

import httpx

from action_runtime.llm.chat_sse import ChatStreamEvent, aiter_chat_completions_stream_events

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"


def sse_data_payload(line: str) -> Optional[str]:
    """`data:` 行返回去掉前缀的 payload；`event:`/`id:`/注释/空行返回 None。"""

    if not line or not line.startswith(_DATA_PREFIX):
        return None
    return line[len(_DATA_PREFIX) :].strip()


async def aiter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """从 SSE 文本行中筛出 data payload。"""

    async for line in lines:
        data = sse_data_payload(line)
        if data is not None:
            yield data


async def aiter_response_events(resp: httpx.Response) -> AsyncIterator[ChatStreamEvent]:
    """
    消费一个 streaming response 并产出解析事件。

    异常：
    - `httpx.HTTPStatusError`：非 2xx（抛出前先读取 body，便于上层解析错误 JSON）
    - `ContextLengthExceededError`：finish_reason=length
    """

    if resp.status_code >= 400:
        try:
            await resp.aread()
        except httpx.HTTPError as e:
            logger.debug("Failed to read error body (status=%s): %s", resp.status_code, e)
    resp.raise_for_status()
    async for ev in aiter_chat_completions_stream_events(aiter_sse_data(resp.aiter_lines())):
        yield ev


async def stream_chat_completion_events(
    client: httpx.AsyncClient,
    url: str,
    *,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> AsyncIterator[ChatStreamEvent]:
    """
    POST 一个 streaming chat.completions 请求并产出事件。

    参数：
    - client：调用方持有的 `httpx.AsyncClient`（超时、代理、transport 由调用方配置）
    - url：完整 endpoint
    - payload：请求体（调用方负责设置 `stream=true`）
    - headers：附加 header（例如 Authorization）
    """

    async with client.stream("POST", url, json=payload, headers=headers) as resp:
        async for ev in aiter_response_events(resp):
            yield ev
