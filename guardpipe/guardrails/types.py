"""가드레일 파이프라인 데이터 모델.

모든 값은 호출마다 새로 만들어지고 호출이 끝나면 버려집니다.
호출자에게 돌려주는 값은 ``PipelineResult`` (Success | Failure) 하나뿐입니다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Tuple, Union

from guardpipe.core.tracer import InvocationTrace

if TYPE_CHECKING:
    from guardpipe.schema import Schema


class ErrorKind(str, Enum):
    """Failure 종류."""

    INPUT_INVALID = "INPUT_INVALID"
    INJECTION_DETECTED = "INJECTION_DETECTED"
    SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    CANCELLED = "CANCELLED"


class PipelineState(str, Enum):
    """오케스트레이터 상태."""

    RECEIVED = "RECEIVED"
    INPUT_CHECKED = "INPUT_CHECKED"
    THREAT_CHECKED = "THREAT_CHECKED"
    PII_SCRUBBED = "PII_SCRUBBED"
    ASSEMBLED = "ASSEMBLED"
    MODEL_CALLED = "MODEL_CALLED"
    OUTPUT_CHECKED = "OUTPUT_CHECKED"
    SANITIZED = "SANITIZED"
    DONE = "DONE"
    REJECTED = "REJECTED"


class ThreatType(str, Enum):
    INJECTION = "injection"
    DATA_EXTRACTION = "data_extraction"
    ROLE_MANIPULATION = "role_manipulation"
    NONE = "none"


class PiiCategory(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    CREDIT_CARD = "credit_card"
    API_KEY = "api_key"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RawInput:
    """신뢰할 수 없는 사용자 입력."""

    text: str
    max_length: int = 4000
    locale: str = "und"


@dataclass(frozen=True)
class Violation:
    """검증 규칙 위반 한 건."""

    rule_id: str
    detail: str = ""


@dataclass(frozen=True)
class ValidationVerdict:
    """입력/출력 검증 결과. 위반은 발견 순서대로 모두 담깁니다."""

    valid: bool
    violations: Tuple[Violation, ...] = ()

    @classmethod
    def from_violations(cls, violations: List[Violation]) -> "ValidationVerdict":
        return cls(valid=not violations, violations=tuple(violations))

    @property
    def rule_ids(self) -> List[str]:
        return [v.rule_id for v in self.violations]

    def has(self, *rule_ids: str) -> bool:
        return any(v.rule_id in rule_ids for v in self.violations)


@dataclass(frozen=True)
class ThreatAssessment:
    """위협 탐지 결과."""

    is_safe: bool
    threat_type: ThreatType = ThreatType.NONE
    confidence: float = 0.0
    source: str = "rules"

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1]: {self.confidence}")

    @classmethod
    def safe(cls, source: str = "rules") -> "ThreatAssessment":
        return cls(is_safe=True, threat_type=ThreatType.NONE, confidence=0.0, source=source)


@dataclass(frozen=True)
class PiiFinding:
    """PII 탐지 결과. start/end 는 원문 기준 오프셋 (end 미포함)."""

    start: int
    end: int
    category: PiiCategory
    replacement_token: str

    @property
    def span(self) -> Tuple[int, int]:
        return (self.start, self.end)


@dataclass(frozen=True)
class AssembledRequest:
    """모델에 보낼 최종 요청.

    ``system_instructions`` 는 템플릿, 안전 프리앰블, 스키마 지시문으로만
    구성되고 사용자 입력은 ``user_block`` 의 구분자 사이에만 들어갑니다.
    """

    system_instructions: str
    sanitized_payload: str
    user_block: str
    declared_output_schema: Optional["Schema"] = None
    instructions_version: str = ""

    def to_messages(self) -> List[Dict[str, str]]:
        """chat completions 형식 메시지 목록."""
        return [
            {"role": "system", "content": self.system_instructions},
            {"role": "user", "content": self.user_block},
        ]


@dataclass(frozen=True)
class Success:
    """파이프라인 성공 결과."""

    data: Any
    no_answer: bool = False
    trace: Optional[InvocationTrace] = field(default=None, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "data": self.data, "no_answer": self.no_answer}


@dataclass(frozen=True)
class Failure:
    """파이프라인 실패 결과."""

    error_kind: ErrorKind
    message: str
    offending_field: Optional[str] = None
    stage: Optional[str] = None
    violations: Tuple[Violation, ...] = ()
    trace: Optional[InvocationTrace] = field(default=None, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return False

    @property
    def rule_ids(self) -> List[str]:
        return [v.rule_id for v in self.violations]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "ok": False,
            "error": self.error_kind.value,
            "message": self.message,
        }
        if self.offending_field:
            result["offending_field"] = self.offending_field
        if self.stage:
            result["stage"] = self.stage
        if self.violations:
            result["violations"] = [
                {"rule_id": v.rule_id, "detail": v.detail} for v in self.violations
            ]
        return result


PipelineResult = Union[Success, Failure]


class ModelInvoker(Protocol):
    """외부 모델 호출 인터페이스.

    시간 초과는 ModelTimeoutError, 제공자 오류는 ProviderError 로 알립니다.
    """

    async def invoke(self, request: AssembledRequest, timeout: float) -> str:
        ...
