"""가드레일 모듈.

기능:
- 입력 가드: 길이 제한, 지시 무력화 문구, 난독화 탐지
- 위협 탐지: 규칙 엔진 / 보조 모델 / 조합
- PII: 탐지 및 자리표시자 마스킹
- 프롬프트 조립: 시스템 지시문과 사용자 입력 분리
- 출력 가드: 스키마 검증, 정책 위반 탐지, 응답 정제
- 파이프라인: 전체 단계를 상태 머신으로 연결
"""

from .types import (
    AssembledRequest,
    ErrorKind,
    Failure,
    ModelInvoker,
    PiiCategory,
    PiiFinding,
    PipelineResult,
    PipelineState,
    RawInput,
    Success,
    ThreatAssessment,
    ThreatType,
    ValidationVerdict,
    Violation,
)
from .input_guards import (
    validate_input,
    normalize_for_matching,
)
from .threat import (
    CompositeThreatDetector,
    ModelThreatDetector,
    RuleThreatDetector,
    ThreatDetector,
    assess_with_policy,
)
from .pii import (
    PiiRedactor,
    mask_pii,
    redact,
    scan,
)
from .assembler import (
    assemble,
    extract_user_payload,
)
from .output_guards import (
    OutputPolicy,
    sanitize_output,
    validate_output,
)
from .pipeline import (
    GuardedPipeline,
    run,
    run_sync,
)

__all__ = [
    # Types
    "AssembledRequest",
    "ErrorKind",
    "Failure",
    "ModelInvoker",
    "PiiCategory",
    "PiiFinding",
    "PipelineResult",
    "PipelineState",
    "RawInput",
    "Success",
    "ThreatAssessment",
    "ThreatType",
    "ValidationVerdict",
    "Violation",
    # Input guards
    "validate_input",
    "normalize_for_matching",
    # Threat detection
    "CompositeThreatDetector",
    "ModelThreatDetector",
    "RuleThreatDetector",
    "ThreatDetector",
    "assess_with_policy",
    # PII
    "PiiRedactor",
    "mask_pii",
    "redact",
    "scan",
    # Prompt assembly
    "assemble",
    "extract_user_payload",
    # Output guards
    "OutputPolicy",
    "sanitize_output",
    "validate_output",
    # Pipeline
    "GuardedPipeline",
    "run",
    "run_sync",
]
