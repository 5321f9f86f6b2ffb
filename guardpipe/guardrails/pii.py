"""PII 탐지 및 마스킹 모듈.

기능:
- 카테고리별 정규식으로 PII 구간 탐지 (email, phone, ssn, credit_card, api_key, custom)
- 겹치는 후보는 더 긴 쪽을 남겨 서로 겹치지 않는 구간 목록으로 정리
- 구간을 ``[CATEGORY_REDACTED]`` 자리표시자로 치환, 구간 밖 문자는 그대로 유지

자리표시자는 어떤 패턴에도 다시 걸리지 않으므로 마스킹된 텍스트를
다시 마스킹해도 결과가 같습니다.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from guardpipe.config import PipelineConfig
from guardpipe.guardrails.types import PiiCategory, PiiFinding

PLACEHOLDER_RE = re.compile(r"\[[A-Z0-9_]+_REDACTED\]")

# 같은 길이 후보끼리 겹칠 때 앞에 있는 카테고리가 우선
_PRIORITY = (
    PiiCategory.API_KEY,
    PiiCategory.EMAIL,
    PiiCategory.SSN,
    PiiCategory.CREDIT_CARD,
    PiiCategory.PHONE,
    PiiCategory.CUSTOM,
)

# 패턴에 ``pii`` 이름 그룹이 있으면 그 그룹만 마스킹
DEFAULT_PII_PATTERNS: Dict[PiiCategory, Tuple[str, ...]] = {
    PiiCategory.EMAIL: (
        r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}",
    ),
    PiiCategory.PHONE: (
        r"(?<![\w+])(?:\+\d{1,3}[-. ]?)?(?:\(\d{2,4}\)|\d{2,4})[-. ]?\d{3,4}[-. ]?\d{4}(?!\w)",
    ),
    PiiCategory.SSN: (
        r"\b\d{3}[-. ]\d{2}[-. ]\d{4}\b",
        # 주민등록번호
        r"\b\d{6}[-.\s]?[1-4]\d{6}\b",
    ),
    PiiCategory.CREDIT_CARD: (
        r"\b\d(?:[ -]?\d){12,18}\b",
    ),
    PiiCategory.API_KEY: (
        r"\b(?:sk|pk|rk)[-_](?:live[-_]|test[-_]|proj[-_])?[A-Za-z0-9_-]{16,}",
        r"\bAKIA[0-9A-Z]{16}\b",
        r"\bgh[pousr]_[A-Za-z0-9]{30,}\b",
        r"\bxox[abprs]-[A-Za-z0-9-]{10,}",
        r"(?i:api[_-]?key|secret|access[_-]?token)\s*[:=]\s*['\"]?(?P<pii>[A-Za-z0-9_\-]{12,})",
        # 숫자와 문자가 섞인 32자 이상의 불투명 토큰
        r"\b(?=[A-Za-z0-9_-]*\d)(?=[A-Za-z0-9_-]*[A-Za-z])[A-Za-z0-9_-]{32,}\b",
    ),
}


def placeholder_for(category: PiiCategory, label: Optional[str] = None) -> str:
    """카테고리 자리표시자. custom 은 label 로 태그."""
    name = label if category is PiiCategory.CUSTOM and label else category.value
    tag = re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_") or "CUSTOM"
    return f"[{tag}_REDACTED]"


class PiiRedactor:
    """PII 탐지기/마스커."""

    def __init__(
        self,
        categories: Sequence[str] = tuple(c.value for c in _PRIORITY if c is not PiiCategory.CUSTOM),
        custom_patterns: Sequence[Tuple[str, str]] = (),
    ):
        self._rules: List[Tuple[PiiCategory, str, Pattern[str]]] = []
        enabled = {PiiCategory(c) for c in categories}
        for category in _PRIORITY:
            if category not in enabled:
                continue
            for pattern in DEFAULT_PII_PATTERNS.get(category, ()):
                self._rules.append((category, placeholder_for(category), re.compile(pattern)))
        for label, pattern in custom_patterns:
            self._rules.append(
                (PiiCategory.CUSTOM, placeholder_for(PiiCategory.CUSTOM, label), re.compile(pattern))
            )

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "PiiRedactor":
        return _redactor_for(config.pii_categories, config.custom_pii_patterns)

    def scan(self, text: str) -> List[PiiFinding]:
        """PII 탐지.

        Args:
            text: 입력 텍스트

        Returns:
            시작 오프셋 순으로 정렬된, 서로 겹치지 않는 PiiFinding 목록
        """
        protected = [m.span() for m in PLACEHOLDER_RE.finditer(text)]

        candidates: List[Tuple[int, int, int, PiiCategory, str]] = []
        for category, token, pattern in self._rules:
            rank = _PRIORITY.index(category)
            for match in pattern.finditer(text):
                start, end = match.span("pii") if "pii" in pattern.groupindex else match.span()
                if start == end or _overlaps_any(start, end, protected):
                    continue
                candidates.append((start, end, rank, category, token))

        # 긴 후보 우선, 같은 길이는 카테고리 우선순위, 그다음 앞선 위치
        candidates.sort(key=lambda c: (-(c[1] - c[0]), c[2], c[0]))

        accepted: List[PiiFinding] = []
        taken: List[Tuple[int, int]] = []
        for start, end, _, category, token in candidates:
            if _overlaps_any(start, end, taken):
                continue
            taken.append((start, end))
            accepted.append(
                PiiFinding(start=start, end=end, category=category, replacement_token=token)
            )

        accepted.sort(key=lambda f: f.start)
        return accepted

    @staticmethod
    def redact(text: str, findings: Sequence[PiiFinding]) -> str:
        """탐지 구간을 자리표시자로 치환. 구간 밖 문자는 순서 그대로 유지."""
        parts: List[str] = []
        cursor = 0
        for finding in sorted(findings, key=lambda f: f.start):
            if finding.start < cursor:
                raise ValueError(f"overlapping PII findings at offset {finding.start}")
            parts.append(text[cursor:finding.start])
            parts.append(finding.replacement_token)
            cursor = finding.end
        parts.append(text[cursor:])
        return "".join(parts)

    def scrub(self, text: str) -> Tuple[str, List[PiiFinding]]:
        """탐지 + 마스킹을 더 이상 찾을 것이 없을 때까지 반복.

        치환 후 경계 문자가 바뀌어 새로 드러나는 PII 까지 지우기 위해 반복하며,
        반환값은 (마스킹된 텍스트, 원문 기준 첫 탐지 목록) 입니다.
        """
        findings = self.scan(text)
        redacted = self.redact(text, findings)
        while True:
            more = self.scan(redacted)
            if not more:
                return redacted, findings
            redacted = self.redact(redacted, more)


def _overlaps_any(start: int, end: int, spans: Sequence[Tuple[int, int]]) -> bool:
    return any(start < s_end and s_start < end for s_start, s_end in spans)


@lru_cache(maxsize=32)
def _redactor_for(categories, custom_patterns) -> PiiRedactor:
    return PiiRedactor(categories=sorted(categories), custom_patterns=custom_patterns)


def scan(text: str, config: Optional[PipelineConfig] = None) -> List[PiiFinding]:
    """설정 기반 PII 탐지."""
    return PiiRedactor.from_config(config or PipelineConfig()).scan(text)


def redact(text: str, findings: Sequence[PiiFinding]) -> str:
    """탐지 결과대로 마스킹."""
    return PiiRedactor.redact(text, findings)


def mask_pii(text: str, config: Optional[PipelineConfig] = None) -> str:
    """텍스트의 PII 를 모두 마스킹 (멱등)."""
    masked, _ = PiiRedactor.from_config(config or PipelineConfig()).scrub(text)
    return masked
