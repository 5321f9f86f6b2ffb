"""출력 가드레일 모듈.

기능:
- 선언된 스키마와 응답 구조 비교 (SCHEMA_MISMATCH)
- 금지 패턴, 시스템 지시문 누출, 역할 변경 시인 탐지 (POLICY_VIOLATION)
- 답변 불가 고정 문구는 위반으로 보지 않음
- 응답에 섞여 나온 PII 마스킹
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, FrozenSet, List, Optional, Pattern, Set, Tuple

from guardpipe.config import PipelineConfig
from guardpipe.guardrails.pii import PiiRedactor
from guardpipe.guardrails.types import ValidationVerdict, Violation
from guardpipe.schema import Schema, check, parse_structured

SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
POLICY_VIOLATION = "POLICY_VIOLATION"

# 모델이 역할/정체성이 바뀌었다고 인정하는 표현
DEFAULT_COMPROMISE_PATTERNS: Tuple[str, ...] = (
    r"\bi\s+am\s+now\s+(a|an|acting\s+as|in)\b",
    r"\b(developer|dan|god)\s+mode\s+(is\s+)?(enabled|activated|on)\b",
    r"\bjailbreak\s+successful\b",
    r"\brestrictions?\s+(have\s+been\s+|are\s+)?(removed|lifted|disabled)\b",
    r"\bi\s+am\s+(human|not\s+an?\s+(ai|bot|assistant))\b",
    r"\bmy\s+new\s+(role|identity|instructions)\s+(is|are)\b",
    r"\bpwned\b",
    r"(저는\s*인간입니다|관리자\s*권한)",
)

_WORD_RE = re.compile(r"\w+")


@dataclass(frozen=True)
class OutputPolicy:
    """출력 정책."""

    forbidden_patterns: Tuple[str, ...] = ()
    system_instructions: str = ""
    no_answer_sentinel: str = "NO_ANSWER"
    leak_ngram_size: int = 8
    compromise_patterns: Tuple[str, ...] = DEFAULT_COMPROMISE_PATTERNS

    @classmethod
    def from_config(cls, config: PipelineConfig, system_instructions: str = "") -> "OutputPolicy":
        return cls(
            forbidden_patterns=config.forbidden_patterns,
            system_instructions=system_instructions,
            no_answer_sentinel=config.no_answer_sentinel,
            leak_ngram_size=config.leak_ngram_size,
        )


@lru_cache(maxsize=64)
def _compile(patterns: Tuple[str, ...]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def _shingles(text: str, size: int) -> Set[Tuple[str, ...]]:
    words = [w.lower() for w in _WORD_RE.findall(text)]
    if len(words) < size:
        return {tuple(words)} if words else set()
    return {tuple(words[i:i + size]) for i in range(len(words) - size + 1)}


# 캐시 대상은 시스템 지시문뿐, 모델 응답 shingle 은 호출마다 새로 계산
@lru_cache(maxsize=32)
def _instruction_shingles(system_instructions: str, size: int) -> FrozenSet[Tuple[str, ...]]:
    return frozenset(_shingles(system_instructions, size))


def is_no_answer(response: str, sentinel: str) -> bool:
    """답변 불가 고정 문구인지 확인 (앞뒤 공백, 따옴표, 마침표 무시)."""
    return response.strip().strip("\"'").rstrip(".").strip().lower() == sentinel.strip().lower()


def detect_instruction_leak(response: str, system_instructions: str, size: int = 8) -> bool:
    """시스템 지시문의 연속 단어 size 개가 응답에 그대로 나오면 누출로 판단."""
    if not system_instructions.strip():
        return False
    leaked = _instruction_shingles(system_instructions, size)
    if not leaked:
        return False
    window = min(size, max(len(s) for s in leaked))
    return bool(leaked & _shingles(response, window))


def detect_policy_violations(response: str, policy: OutputPolicy) -> List[Violation]:
    """금지 패턴 / 지시문 누출 / 역할 변경 시인 탐지."""
    violations: List[Violation] = []

    for idx, pattern in enumerate(_compile(policy.forbidden_patterns)):
        if pattern.search(response):
            violations.append(Violation(POLICY_VIOLATION, f"matched forbidden pattern #{idx}"))

    if detect_instruction_leak(response, policy.system_instructions, policy.leak_ngram_size):
        violations.append(Violation(POLICY_VIOLATION, "response repeats system instructions"))

    for pattern in _compile(policy.compromise_patterns):
        if pattern.search(response):
            violations.append(Violation(POLICY_VIOLATION, "response admits a role or identity change"))
            break

    return violations


def parse_output(response: str, schema: Optional[Schema]) -> Tuple[Any, List[Violation]]:
    """스키마가 있으면 JSON 파싱 후 구조 검사, 없으면 원문 그대로.

    Returns:
        (파싱된 값, SCHEMA_MISMATCH 위반 목록)
    """
    if schema is None:
        return response, []

    try:
        data = parse_structured(response)
    except ValueError as e:
        return None, [Violation(SCHEMA_MISMATCH, f"response is not valid JSON: {e}")]

    problems = check(data, schema)
    return data, [Violation(SCHEMA_MISMATCH, f"{path}: {msg}") for path, msg in problems]


def validate_output(
    response: str,
    schema: Optional[Schema],
    policy: OutputPolicy,
) -> ValidationVerdict:
    """출력 가드 적용.

    Args:
        response: 모델 응답 원문
        schema: 기대 출력 스키마 (선택)
        policy: 출력 정책

    Returns:
        ValidationVerdict (정책 위반이 스키마 위반보다 앞에 옴)
    """
    if is_no_answer(response, policy.no_answer_sentinel):
        return ValidationVerdict(valid=True)

    violations = detect_policy_violations(response, policy)
    _, schema_violations = parse_output(response, schema)
    violations.extend(schema_violations)
    return ValidationVerdict.from_violations(violations)


def sanitize_output(response: str, redactor: PiiRedactor) -> str:
    """응답 텍스트의 PII 마스킹 (멱등)."""
    sanitized, _ = redactor.scrub(response)
    return sanitized


def sanitize_data(value: Any, redactor: PiiRedactor) -> Any:
    """파싱된 구조 안의 문자열 값을 재귀적으로 마스킹."""
    if isinstance(value, str):
        return sanitize_output(value, redactor)
    if isinstance(value, list):
        return [sanitize_data(v, redactor) for v in value]
    if isinstance(value, dict):
        return {k: sanitize_data(v, redactor) for k, v in value.items()}
    return value
