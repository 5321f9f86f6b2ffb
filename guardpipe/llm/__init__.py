"""모델 호출기 패키지."""

from guardpipe.llm.client import (
    BASE_URLS,
    CallableModelInvoker,
    HTTPModelInvoker,
    create_invoker,
    resolve_base_url,
)

__all__ = [
    "BASE_URLS",
    "CallableModelInvoker",
    "HTTPModelInvoker",
    "create_invoker",
    "resolve_base_url",
]
