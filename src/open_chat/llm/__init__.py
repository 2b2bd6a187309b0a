"""LLM client, request executor and stream decoder for open-chat."""

from open_chat.llm.client import AsyncLLMClient, build_request_body
from open_chat.llm.retry import RequestExecutor, RetryPolicy, compute_backoff
from open_chat.llm.stream import decode_sse_stream
from open_chat.llm.transport import HttpxTransport, RequestSpec, Transport

__all__ = [
    "AsyncLLMClient",
    "HttpxTransport",
    "RequestExecutor",
    "RequestSpec",
    "RetryPolicy",
    "Transport",
    "build_request_body",
    "compute_backoff",
    "decode_sse_stream",
]
