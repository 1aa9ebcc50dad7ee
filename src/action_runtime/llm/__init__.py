"""
LLM wire 层（OpenAI-compatible chat.completions streaming）。

- `chat_sse`：把 SSE `data:` payload 解析为事件
- `http_stream`：把 httpx streaming response 接到解析器上（连接、鉴权、重试由宿主负责）
"""

from __future__ import annotations

from action_runtime.llm.chat_sse import (
    ChatCompletionsSseParser,
    ChatStreamEvent,
    aiter_chat_completions_stream_events,
    iter_chat_completions_stream_events,
)
from action_runtime.llm.errors import ContextLengthExceededError
from action_runtime.llm.http_stream import aiter_response_events, aiter_sse_data, stream_chat_completion_events

__all__ = [
    "ChatCompletionsSseParser",
    "ChatStreamEvent",
    "ContextLengthExceededError",
    "aiter_chat_completions_stream_events",
    "aiter_response_events",
    "aiter_sse_data",
    "iter_chat_completions_stream_events",
    "stream_chat_completion_events",
]
