"""입력 가드레일 모듈.

기능:
- 입력 길이 제한 (TOO_LONG, TOO_SHORT, EMPTY)
- 지시 무력화 문구 탐지 (SUSPICIOUS_PATTERN)
- 특수문자 비율 기반 난독화 탐지 (OBFUSCATION)

모델 호출이 없는 결정적 검사이며, 위반은 첫 건에서 멈추지 않고 모두 수집합니다.
"""

from __future__ import annotations

import re
import unicodedata
from functools import lru_cache
from typing import List, Pattern, Tuple

from guardpipe.config import PipelineConfig
from guardpipe.guardrails.types import RawInput, ValidationVerdict, Violation

TOO_LONG = "TOO_LONG"
TOO_SHORT = "TOO_SHORT"
EMPTY = "EMPTY"
SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"
OBFUSCATION = "OBFUSCATION"

# 길이 관련 규칙 (INPUT_INVALID 로 분류)
LENGTH_RULES = (TOO_LONG, TOO_SHORT, EMPTY)

# 패턴 매칭 전에 제거하는 보이지 않는 문자
_INVISIBLE_CHARS = dict.fromkeys(
    map(ord, "\u200b\u200c\u200d\u2060\ufeff\u00ad\u034f\u180e\u202a\u202b\u202c\u202d\u202e"),
    None,
)


@lru_cache(maxsize=64)
def _compile_patterns(patterns: Tuple[str, ...]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns)


def normalize_for_matching(text: str) -> str:
    """NFKC 정규화 + 보이지 않는 문자 제거.

    전각 문자나 zero-width 문자로 패턴을 우회하는 입력을 잡기 위한 것으로,
    매칭에만 쓰고 원문은 바꾸지 않습니다.
    """
    return unicodedata.normalize("NFKC", text).translate(_INVISIBLE_CHARS)


def non_alnum_ratio(text: str) -> float:
    """공백을 제외한 문자 중 영숫자가 아닌 문자의 비율."""
    chars = [c for c in text if not c.isspace()]
    if not chars:
        return 0.0
    return sum(1 for c in chars if not c.isalnum()) / len(chars)


def validate_length(raw: RawInput, config: PipelineConfig) -> List[Violation]:
    """입력 길이 검증."""
    text = raw.text
    max_length = min(raw.max_length, config.max_length)
    violations: List[Violation] = []

    if len(text) > max_length:
        violations.append(Violation(TOO_LONG, f"length {len(text)} exceeds max_length {max_length}"))

    stripped = text.strip()
    if not stripped:
        violations.append(Violation(EMPTY, "input is empty after trimming"))
    elif len(stripped) < config.min_length:
        violations.append(
            Violation(TOO_SHORT, f"length {len(stripped)} is below min_length {config.min_length}")
        )

    return violations


def detect_suspicious_patterns(text: str, config: PipelineConfig) -> List[Violation]:
    """지시 무력화/역할 변경/구분자 위장 문구 탐지.

    매칭된 패턴마다 위반 한 건을 만듭니다. detail 에는 패턴 번호만 남기고
    사용자 원문은 넣지 않습니다.
    """
    normalized = normalize_for_matching(text)
    violations = []
    for idx, pattern in enumerate(_compile_patterns(config.suspicious_patterns)):
        if pattern.search(normalized):
            violations.append(Violation(SUSPICIOUS_PATTERN, f"matched suspicious pattern #{idx}"))
    return violations


def detect_obfuscation(text: str, config: PipelineConfig) -> List[Violation]:
    """특수문자 비율이 임계값을 넘으면 위반."""
    ratio = non_alnum_ratio(text)
    if ratio > config.obfuscation_threshold:
        return [
            Violation(
                OBFUSCATION,
                f"non-alphanumeric ratio {ratio:.2f} exceeds {config.obfuscation_threshold:.2f}",
            )
        ]
    return []


def validate_input(raw: RawInput, config: PipelineConfig) -> ValidationVerdict:
    """입력 가드 적용.

    Args:
        raw: 사용자 입력
        config: 파이프라인 설정

    Returns:
        모든 위반을 담은 ValidationVerdict
    """
    violations: List[Violation] = []

    # 1. 길이 검증
    violations.extend(validate_length(raw, config))

    # 2. 지시 무력화 문구
    violations.extend(detect_suspicious_patterns(raw.text, config))

    # 3. 난독화
    violations.extend(detect_obfuscation(raw.text, config))

    return ValidationVerdict.from_violations(violations)
