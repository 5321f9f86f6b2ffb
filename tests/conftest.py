"""pytest 설정 및 공통 fixture."""

import asyncio

import pytest

from guardpipe.config import PipelineConfig
from guardpipe.core.logging import invocation_id_var, stage_var
from guardpipe.llm import CallableModelInvoker
from guardpipe.schema import schema_from_dict


@pytest.fixture(autouse=True)
def reset_log_context():
    """각 테스트 전/후에 로깅 컨텍스트 초기화."""
    invocation_id_var.set(None)
    stage_var.set(None)
    yield
    invocation_id_var.set(None)
    stage_var.set(None)


@pytest.fixture
def default_config():
    """기본 파이프라인 설정."""
    return PipelineConfig()


@pytest.fixture
def summary_config():
    """``{summary: string}`` 스키마를 선언한 설정."""
    return PipelineConfig(schema=schema_from_dict({"summary": "string"}))


@pytest.fixture
def make_invoker():
    """응답/지연/예외를 지정할 수 있는 호출 기록용 모델 호출기 팩토리."""

    def _make(reply="ok", delay=0.0, error=None):
        async def respond(request):
            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise error
            return reply

        return CallableModelInvoker(respond)

    return _make


@pytest.fixture
def spy_invoker(make_invoker):
    """항상 ``{"summary": "ok"}`` 를 돌려주는 호출기."""
    return make_invoker(reply='{"summary": "ok"}')


@pytest.fixture
def sample_card_query():
    """신용카드 번호가 들어 있는 입력."""
    return "My card number is 4111-1111-1111-1111, why was it declined?"
