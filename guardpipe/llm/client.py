"""모델 호출기 구현 (OpenAI, Anthropic, Local 지원)

파이프라인은 ModelInvoker 인터페이스(``invoke(request, timeout) -> str``)만 알고,
실제 HTTP 호출은 이 모듈의 HTTPModelInvoker 가 담당합니다.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from guardpipe.config import LLMConfig
from guardpipe.core.exceptions import ModelTimeoutError, ProviderError
from guardpipe.core.logging import get_logger
from guardpipe.guardrails.types import AssembledRequest

logger = get_logger(__name__)

ANTHROPIC_API_VERSION = "2023-06-01"

# 프로바이더별 기본 base_url
BASE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com",
    "local": "http://localhost:8080/v1",
}


def resolve_base_url(config: LLMConfig) -> str:
    """설정의 base_url, 없으면 프로바이더 기본값."""
    if config.provider not in BASE_URLS:
        raise ValueError(f"지원하지 않는 프로바이더: {config.provider}")
    return (config.base_url or BASE_URLS[config.provider]).rstrip("/")


class HTTPModelInvoker:
    """HTTP 모델 호출기.

    시간 초과는 ModelTimeoutError, HTTP 오류와 연결 실패는 ProviderError 로 바꿔 던집니다.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig()
        self.base_url = resolve_base_url(self.config)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "HTTPModelInvoker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def invoke(self, request: AssembledRequest, timeout: float) -> str:
        """조립된 요청으로 모델 호출.

        Args:
            request: 프롬프트 조립기가 만든 요청
            timeout: 이번 호출의 제한 시간(초)

        Returns:
            모델 응답 텍스트
        """
        if self.config.provider == "anthropic":
            url, payload, headers = self._anthropic_request(request)
        else:
            url, payload, headers = self._openai_request(request)

        session = await self._get_session()
        try:
            async with session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    logger.error(
                        f"{self.config.provider} API 오류: {resp.status}",
                        status=resp.status,
                        body=error_text[:200],
                    )
                    raise ProviderError(
                        f"{self.config.provider} API 오류: {resp.status}",
                        status=resp.status,
                    )
                try:
                    data = await resp.json()
                except ValueError as e:
                    logger.error(f"{self.config.provider} API 응답이 JSON 이 아닙니다: {e}")
                    raise ProviderError(f"{self.config.provider} API 응답 JSON 파싱 실패: {e}") from e
        except asyncio.TimeoutError as e:
            raise ModelTimeoutError(
                f"{self.config.provider} API 응답이 {timeout}초 안에 오지 않았습니다",
                timeout=timeout,
            ) from e
        except aiohttp.ClientError as e:
            logger.error(f"{self.config.provider} API 연결 오류: {e}")
            raise ProviderError(f"{self.config.provider} API 연결 오류: {e}") from e

        return self._extract_text(data)

    def _openai_request(self, request: AssembledRequest):
        """OpenAI 호환 chat completions 요청 (openai, local)."""
        if self.config.provider == "openai" and not self.config.api_key:
            raise ProviderError("OpenAI API 키가 설정되지 않았습니다. configs/llm.yaml을 확인하세요.")

        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": request.to_messages(),
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return f"{self.base_url}/chat/completions", payload, headers

    def _anthropic_request(self, request: AssembledRequest):
        """Anthropic messages 요청. 시스템 지시문은 system 필드로 분리."""
        if not self.config.api_key:
            raise ProviderError("Anthropic API 키가 설정되지 않았습니다. configs/llm.yaml을 확인하세요.")

        payload: Dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": request.system_instructions,
            "messages": [{"role": "user", "content": request.user_block}],
        }
        headers = {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }
        return f"{self.base_url}/v1/messages", payload, headers

    def _extract_text(self, data: Dict[str, Any]) -> str:
        try:
            if self.config.provider == "anthropic":
                text = data["content"][0]["text"]
            else:
                text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.config.provider} API 응답 형식 오류: {e}") from e

        # 거절 응답은 content 가 null 로 올 수 있음
        if not isinstance(text, str):
            raise ProviderError(
                f"{self.config.provider} API 응답 본문이 문자열이 아닙니다: {type(text).__name__}"
            )
        return text


InvokeFn = Callable[[AssembledRequest], Union[str, Awaitable[str]]]


class CallableModelInvoker:
    """함수를 ModelInvoker 로 감싸는 어댑터.

    동기/비동기 함수 모두 받으며, 받은 요청을 ``requests`` 에 기록합니다.
    """

    def __init__(self, fn: InvokeFn):
        self.fn = fn
        self.requests: List[AssembledRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def invoke(self, request: AssembledRequest, timeout: float) -> str:
        self.requests.append(request)
        result = self.fn(request)
        if inspect.isawaitable(result):
            result = await result
        return result


def create_invoker(config: LLMConfig) -> HTTPModelInvoker:
    """LLMConfig 로 HTTP 호출기 생성."""
    return HTTPModelInvoker(config)
