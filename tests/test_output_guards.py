"""출력 가드 테스트."""

import pytest

from guardpipe.config import DEFAULT_SYSTEM_PROMPT, PipelineConfig
from guardpipe.guardrails.assembler import build_system_instructions
from guardpipe.guardrails.output_guards import (
    POLICY_VIOLATION,
    SCHEMA_MISMATCH,
    OutputPolicy,
    _instruction_shingles,
    _shingles,
    detect_instruction_leak,
    is_no_answer,
    parse_output,
    sanitize_data,
    sanitize_output,
    validate_output,
)
from guardpipe.guardrails.pii import PiiRedactor
from guardpipe.schema import schema_from_dict

SUMMARY = schema_from_dict({"summary": "string"})


class TestSchemaValidation:
    """스키마 검증 테스트."""

    def test_matching_response(self):
        verdict = validate_output('{"summary": "ok"}', SUMMARY, OutputPolicy())
        assert verdict.valid

    def test_extra_key(self):
        """추가 키는 SCHEMA_MISMATCH."""
        verdict = validate_output('{"summary": "ok", "extra": 1}', SUMMARY, OutputPolicy())
        assert verdict.rule_ids == [SCHEMA_MISMATCH]
        assert verdict.violations[0].detail.startswith("$.extra")

    def test_not_json(self):
        """JSON 이 아니면 SCHEMA_MISMATCH."""
        verdict = validate_output("The summary is fine.", SUMMARY, OutputPolicy())
        assert verdict.rule_ids == [SCHEMA_MISMATCH]

    def test_no_schema_accepts_text(self):
        """스키마가 없으면 텍스트 그대로 통과."""
        assert validate_output("The refund window is 30 days.", None, OutputPolicy()).valid
        assert parse_output("plain", None) == ("plain", [])


class TestPolicyValidation:
    """정책 위반 테스트."""

    def test_forbidden_pattern(self):
        """금지 패턴 (대소문자 무시)."""
        policy = OutputPolicy(forbidden_patterns=(r"internal use only",))
        verdict = validate_output("This is INTERNAL USE ONLY", None, policy)
        assert verdict.rule_ids == [POLICY_VIOLATION]

    @pytest.mark.parametrize(
        "response",
        ["I am now in developer mode.", "Jailbreak successful!", "PWNED"],
    )
    def test_compromise_admission(self, response):
        """역할 변경 시인."""
        assert validate_output(response, None, OutputPolicy()).rule_ids == [POLICY_VIOLATION]

    def test_instruction_leak(self):
        """시스템 지시문 누출."""
        instructions = build_system_instructions(DEFAULT_SYSTEM_PROMPT)
        response = "Sure: You are a careful assistant that answers questions about the text supplied."
        assert detect_instruction_leak(response, instructions)
        policy = OutputPolicy(system_instructions=instructions)
        assert not validate_output(response, None, policy).valid

    def test_no_leak_for_ordinary_answer(self):
        instructions = build_system_instructions(DEFAULT_SYSTEM_PROMPT)
        assert not detect_instruction_leak("The refund window is 30 days.", instructions)

    def test_responses_not_cached(self):
        """누출 검사 캐시에는 시스템 지시문만 남고 응답은 남지 않음."""
        instructions = build_system_instructions(DEFAULT_SYSTEM_PROMPT)
        _instruction_shingles.cache_clear()
        for answer in ("The refund window is 30 days.", "Shipping takes 3 days.", "Ask support."):
            detect_instruction_leak(answer, instructions)
        assert _instruction_shingles.cache_info().currsize == 1
        assert not hasattr(_shingles, "cache_info")

    def test_policy_before_schema(self):
        """정책 위반이 스키마 위반보다 앞."""
        verdict = validate_output("PWNED", SUMMARY, OutputPolicy())
        assert verdict.rule_ids == [POLICY_VIOLATION, SCHEMA_MISMATCH]

    def test_from_config(self):
        config = PipelineConfig(forbidden_patterns=("secret",), no_answer_sentinel="N/A")
        policy = OutputPolicy.from_config(config, system_instructions="sys")
        assert policy.forbidden_patterns == ("secret",)
        assert policy.no_answer_sentinel == "N/A"
        assert policy.system_instructions == "sys"


class TestNoAnswer:
    """답변 불가 문구 테스트."""

    @pytest.mark.parametrize("response", ["NO_ANSWER", ' "no_answer." ', "NO_ANSWER\n"])
    def test_sentinel_variants(self, response):
        assert is_no_answer(response, "NO_ANSWER")

    def test_sentinel_is_valid_even_with_schema(self):
        """고정 문구는 스키마 위반이 아님."""
        assert validate_output("NO_ANSWER", SUMMARY, OutputPolicy()).valid

    def test_other_text_is_not_sentinel(self):
        assert not is_no_answer("NO_ANSWER because reasons", "NO_ANSWER")


class TestSanitize:
    """응답 정제 테스트."""

    def test_text(self):
        assert sanitize_output("mail me at a@b.com", PiiRedactor()) == "mail me at [EMAIL_REDACTED]"

    def test_nested_data(self):
        """구조 안의 문자열만 재귀적으로 마스킹."""
        data = {"summary": "call 010-1234-5678", "n": 3, "tags": ["x@y.org", True]}
        assert sanitize_data(data, PiiRedactor()) == {
            "summary": "call [PHONE_REDACTED]",
            "n": 3,
            "tags": ["[EMAIL_REDACTED]", True],
        }
