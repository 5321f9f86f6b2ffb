"""가드레일 파이프라인 오케스트레이터.

상태 전이:
    RECEIVED -> INPUT_CHECKED -> THREAT_CHECKED -> PII_SCRUBBED -> ASSEMBLED
    -> MODEL_CALLED -> OUTPUT_CHECKED -> SANITIZED -> DONE

검사 단계에서 하나라도 실패하면 곧바로 REJECTED 로 가고, 모델 호출 전이라면
모델은 호출하지 않습니다. 예상 가능한 실패는 모두 Failure 값으로 돌려주며,
예외가 호출자에게 올라가는 것은 설정 오류나 버그뿐입니다.

사용:
    pipeline = GuardedPipeline(config, invoker=HTTPModelInvoker(llm_config))
    result = await pipeline.run("환불 규정을 요약해 주세요")
    if result.ok:
        ...
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Dict, Mapping, Optional, Sequence, TypeVar, Union

from guardpipe.config import PipelineConfig
from guardpipe.core.exceptions import (
    DetectorError,
    InvocationCancelled,
    ModelTimeoutError,
    ProviderError,
)
from guardpipe.core.logging import bind_invocation, get_logger, set_stage
from guardpipe.core.tracer import InvocationTrace
from guardpipe.guardrails.assembler import assemble
from guardpipe.guardrails.input_guards import (
    EMPTY,
    LENGTH_RULES,
    SUSPICIOUS_PATTERN,
    TOO_LONG,
    TOO_SHORT,
    validate_input,
)
from guardpipe.guardrails.output_guards import (
    POLICY_VIOLATION,
    OutputPolicy,
    is_no_answer,
    parse_output,
    sanitize_data,
    sanitize_output,
    validate_output,
)
from guardpipe.guardrails.pii import PiiRedactor
from guardpipe.guardrails.threat import RuleThreatDetector, ThreatDetector, assess_with_policy
from guardpipe.guardrails.types import (
    ErrorKind,
    Failure,
    ModelInvoker,
    PipelineResult,
    PipelineState,
    RawInput,
    Success,
    ValidationVerdict,
    Violation,
)

logger = get_logger(__name__)

T = TypeVar("T")

# 정상 진행 시 다음 상태
NEXT_STATE: Dict[PipelineState, PipelineState] = {
    PipelineState.RECEIVED: PipelineState.INPUT_CHECKED,
    PipelineState.INPUT_CHECKED: PipelineState.THREAT_CHECKED,
    PipelineState.THREAT_CHECKED: PipelineState.PII_SCRUBBED,
    PipelineState.PII_SCRUBBED: PipelineState.ASSEMBLED,
    PipelineState.ASSEMBLED: PipelineState.MODEL_CALLED,
    PipelineState.MODEL_CALLED: PipelineState.OUTPUT_CHECKED,
    PipelineState.OUTPUT_CHECKED: PipelineState.SANITIZED,
    PipelineState.SANITIZED: PipelineState.DONE,
}

TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.REJECTED})


class _Invocation:
    """호출 한 번의 상태 머신."""

    def __init__(self, invocation_id: str):
        self.state = PipelineState.RECEIVED
        self.trace = InvocationTrace(invocation_id=invocation_id)
        self.trace.record(PipelineState.RECEIVED.value)
        self._since = time.perf_counter()

    def advance(self, target: PipelineState, detail: Optional[str] = None) -> None:
        expected = NEXT_STATE.get(self.state)
        if target is not expected:
            raise RuntimeError(f"illegal transition {self.state.value} -> {target.value}")
        self.state = target
        self.trace.record(target.value, detail=detail, started=self._since)
        self._since = time.perf_counter()
        set_stage(target.value)

    def reject(
        self,
        kind: ErrorKind,
        message: str,
        stage: str,
        offending_field: Optional[str] = None,
        violations: Sequence[Violation] = (),
    ) -> Failure:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"cannot reject from terminal state {self.state.value}")
        self.state = PipelineState.REJECTED
        self.trace.record(
            PipelineState.REJECTED.value,
            ok=False,
            detail=f"{stage}:{kind.value}",
            started=self._since,
        )
        logger.warning(
            "요청 거부",
            stage=stage,
            error_kind=kind.value,
            rules=[v.rule_id for v in violations],
        )
        return Failure(
            error_kind=kind,
            message=message,
            offending_field=offending_field,
            stage=stage,
            violations=tuple(violations),
            trace=self.trace,
        )

    def finish(self, data: Any, no_answer: bool = False) -> Success:
        self.advance(PipelineState.DONE)
        return Success(data=data, no_answer=no_answer, trace=self.trace)


def input_error_kind(verdict: ValidationVerdict) -> ErrorKind:
    """입력 위반을 에러 종류로 분류. 길이 위반이 지시 무력화 문구보다 우선."""
    if verdict.has(*LENGTH_RULES):
        return ErrorKind.INPUT_INVALID
    if verdict.has(SUSPICIOUS_PATTERN):
        return ErrorKind.INJECTION_DETECTED
    return ErrorKind.INPUT_INVALID


def output_error_kind(verdict: ValidationVerdict) -> ErrorKind:
    """출력 위반을 에러 종류로 분류. 정책 위반이 스키마 위반보다 우선."""
    if verdict.has(POLICY_VIOLATION):
        return ErrorKind.POLICY_VIOLATION
    return ErrorKind.SCHEMA_MISMATCH


async def call_external(
    awaitable: Awaitable[T],
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> T:
    """외부 호출 실행.

    timeout 이 있으면 asyncio.wait_for 로 제한하고, cancel_event 가 먼저 설정되면
    진행 중인 호출을 취소하고 InvocationCancelled 를 던집니다.
    """
    coro = asyncio.wait_for(awaitable, timeout) if timeout is not None else awaitable
    task = asyncio.ensure_future(coro)
    if cancel_event is None:
        return await task

    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise InvocationCancelled()


class GuardedPipeline:
    """입력 검증 -> 위협 탐지 -> PII 마스킹 -> 조립 -> 모델 호출 -> 출력 검증 -> 정제.

    인스턴스에는 변경 가능한 상태가 없으므로 여러 호출을 동시에 실행해도 됩니다.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        invoker: Optional[ModelInvoker] = None,
        detector: Optional[ThreatDetector] = None,
    ):
        if invoker is None:
            raise ValueError("GuardedPipeline requires a model invoker")
        self.config = config or PipelineConfig()
        self.invoker = invoker
        self.detector = detector or RuleThreatDetector(threshold=self.config.threat_threshold)
        self.redactor = PiiRedactor.from_config(self.config)

    async def run(
        self,
        raw_text: str,
        cancel_event: Optional[asyncio.Event] = None,
        locale: str = "und",
    ) -> PipelineResult:
        """파이프라인 실행.

        Args:
            raw_text: 신뢰할 수 없는 사용자 입력
            cancel_event: 설정되면 진행 중인 외부 호출을 포기하고 CANCELLED 반환
            locale: 입력 언어 태그 (메타데이터)

        Returns:
            Success 또는 Failure
        """
        with bind_invocation() as invocation_id:
            logger.info("파이프라인 시작", length=len(raw_text))
            result = await self._run(raw_text, cancel_event, locale, invocation_id)
            logger.info(
                "파이프라인 종료",
                ok=result.ok,
                error_kind=None if result.ok else result.error_kind.value,
                duration_ms=round(result.trace.total_duration_ms, 2) if result.trace else None,
            )
            return result

    async def _run(
        self,
        raw_text: str,
        cancel_event: Optional[asyncio.Event],
        locale: str,
        invocation_id: str,
    ) -> PipelineResult:
        config = self.config
        inv = _Invocation(invocation_id)
        raw = RawInput(text=raw_text, max_length=config.max_length, locale=locale)

        # 1. 입력 검증
        verdict = validate_input(raw, config)
        if not verdict.valid:
            return inv.reject(
                input_error_kind(verdict),
                _input_message(verdict),
                stage="input",
                offending_field="raw_text",
                violations=verdict.violations,
            )
        inv.advance(PipelineState.INPUT_CHECKED)

        if cancel_event is not None and cancel_event.is_set():
            return inv.reject(ErrorKind.CANCELLED, "호출자가 요청을 취소했습니다", stage="input")

        # 2. 위협 탐지
        try:
            assessment = await call_external(
                assess_with_policy(self.detector, raw.text, config),
                cancel_event=cancel_event,
            )
        except InvocationCancelled as e:
            return inv.reject(ErrorKind.CANCELLED, e.message, stage="threat")
        except ModelTimeoutError as e:
            return inv.reject(ErrorKind.TIMEOUT, e.message, stage="threat")
        except (DetectorError, ProviderError) as e:
            return inv.reject(ErrorKind.PROVIDER_ERROR, e.message, stage="threat")

        if not assessment.is_safe:
            return inv.reject(
                ErrorKind.INJECTION_DETECTED,
                f"위험한 입력이 감지되었습니다 ({assessment.threat_type.value}, "
                f"confidence={assessment.confidence:.2f})",
                stage="threat",
                offending_field=assessment.threat_type.value,
            )
        inv.advance(PipelineState.THREAT_CHECKED, detail=assessment.source)

        # 3. PII 마스킹
        sanitized, findings = self.redactor.scrub(raw.text)
        if findings:
            logger.info(
                "입력 PII 마스킹",
                count=len(findings),
                categories=sorted({f.category.value for f in findings}),
            )
        inv.advance(PipelineState.PII_SCRUBBED, detail=f"{len(findings)} finding(s)")

        # 4. 요청 조립
        request = assemble(
            config.system_prompt,
            sanitized,
            schema=config.schema,
            no_answer_sentinel=config.no_answer_sentinel,
        )
        inv.advance(PipelineState.ASSEMBLED, detail=request.instructions_version)

        if cancel_event is not None and cancel_event.is_set():
            return inv.reject(ErrorKind.CANCELLED, "호출자가 요청을 취소했습니다", stage="assemble")

        # 5. 모델 호출
        try:
            response = await call_external(
                self.invoker.invoke(request, config.model_timeout),
                timeout=config.model_timeout,
                cancel_event=cancel_event,
            )
        except InvocationCancelled as e:
            return inv.reject(ErrorKind.CANCELLED, e.message, stage="model")
        except asyncio.TimeoutError:
            return inv.reject(
                ErrorKind.TIMEOUT,
                f"모델 호출이 {config.model_timeout}초 안에 끝나지 않았습니다",
                stage="model",
            )
        except ModelTimeoutError as e:
            return inv.reject(ErrorKind.TIMEOUT, e.message, stage="model")
        except ProviderError as e:
            return inv.reject(ErrorKind.PROVIDER_ERROR, e.message, stage="model")
        if not isinstance(response, str):
            return inv.reject(
                ErrorKind.PROVIDER_ERROR,
                f"모델 응답이 문자열이 아닙니다: {type(response).__name__}",
                stage="model",
            )
        inv.advance(PipelineState.MODEL_CALLED)

        # 6. 출력 검증
        policy = OutputPolicy.from_config(config, system_instructions=request.system_instructions)
        out_verdict = validate_output(response, config.schema, policy)
        if not out_verdict.valid:
            kind = output_error_kind(out_verdict)
            first = next(v for v in out_verdict.violations if v.rule_id == kind.value)
            return inv.reject(
                kind,
                f"모델 응답이 검증을 통과하지 못했습니다: {first.detail}",
                stage="output",
                offending_field=_offending_path(first),
                violations=out_verdict.violations,
            )
        inv.advance(PipelineState.OUTPUT_CHECKED)

        # 7. 응답 정제
        no_answer = is_no_answer(response, config.no_answer_sentinel)
        if no_answer:
            data: Any = None
        elif config.schema is not None:
            parsed, _ = parse_output(response, config.schema)
            data = sanitize_data(parsed, self.redactor)
        else:
            data = sanitize_output(response, self.redactor)
        inv.advance(PipelineState.SANITIZED)

        return inv.finish(data, no_answer=no_answer)


def _input_message(verdict: ValidationVerdict) -> str:
    if verdict.has(TOO_LONG):
        return "입력이 너무 깁니다"
    if verdict.has(EMPTY):
        return "입력이 비어 있습니다"
    if verdict.has(TOO_SHORT):
        return "입력이 너무 짧습니다"
    if verdict.has(SUSPICIOUS_PATTERN):
        return "지시를 무력화하려는 문구가 포함되어 있습니다"
    return "특수문자 비율이 너무 높습니다"


def _offending_path(violation: Violation) -> Optional[str]:
    """스키마 위반 detail 의 '$.key: ...' 에서 경로만 추출."""
    if violation.detail.startswith("$"):
        return violation.detail.split(":", 1)[0]
    return None


def build_config(config: Union[PipelineConfig, Mapping[str, Any], None]) -> PipelineConfig:
    """PipelineConfig, dict, None 을 모두 PipelineConfig 로."""
    if config is None:
        return PipelineConfig()
    if isinstance(config, PipelineConfig):
        return config
    return PipelineConfig.from_dict(config)


async def run(
    raw_text: str,
    config: Union[PipelineConfig, Mapping[str, Any], None] = None,
    invoker: Optional[ModelInvoker] = None,
    detector: Optional[ThreatDetector] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> PipelineResult:
    """호출자 진입점.

    Args:
        raw_text: 사용자 입력
        config: PipelineConfig 또는 ``{max_length, min_length, threat_threshold, schema, ...}``
        invoker: 모델 호출기
        detector: 위협 탐지기 (기본값은 규칙 엔진)
        cancel_event: 취소 이벤트

    Returns:
        Success 또는 Failure
    """
    pipeline = GuardedPipeline(build_config(config), invoker=invoker, detector=detector)
    return await pipeline.run(raw_text, cancel_event=cancel_event)


def run_sync(
    raw_text: str,
    config: Union[PipelineConfig, Mapping[str, Any], None] = None,
    invoker: Optional[ModelInvoker] = None,
    detector: Optional[ThreatDetector] = None,
) -> PipelineResult:
    """이벤트 루프 밖에서 쓰는 동기 진입점."""
    return asyncio.run(run(raw_text, config, invoker=invoker, detector=detector))


__all__ = [
    "GuardedPipeline",
    "NEXT_STATE",
    "build_config",
    "call_external",
    "input_error_kind",
    "output_error_kind",
    "run",
    "run_sync",
]
