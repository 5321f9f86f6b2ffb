"""출력 스키마 테스트."""

import pytest

from guardpipe.schema import (
    ArraySchema,
    BooleanSchema,
    EnumSchema,
    NumberSchema,
    ObjectSchema,
    StringSchema,
    check,
    describe,
    parse_structured,
    schema_from_dict,
    to_dict,
)


class TestSchemaFromDict:
    """스키마 변환 테스트."""

    def test_shorthand_object(self):
        """축약형은 모든 키가 필수."""
        schema = schema_from_dict({"summary": "string", "score": "number"})
        assert schema == ObjectSchema(
            properties=(("summary", StringSchema()), ("score", NumberSchema())),
            required=frozenset({"summary", "score"}),
        )

    def test_explicit_object(self):
        """명시형 required 와 array items."""
        schema = schema_from_dict(
            {
                "type": "object",
                "properties": {"summary": {"type": "string"}, "tags": {"type": "array", "items": "string"}},
                "required": ["summary"],
            }
        )
        assert schema.required == frozenset({"summary"})
        assert schema.fields["tags"] == ArraySchema(items=StringSchema())

    def test_enum_forms(self):
        """목록 축약형과 명시형 enum."""
        assert schema_from_dict(["a", "b"]) == EnumSchema(values=("a", "b"))
        assert schema_from_dict({"type": "enum", "values": ["a", "b"]}) == EnumSchema(values=("a", "b"))

    def test_scalars(self):
        assert schema_from_dict("integer") == NumberSchema(integer_only=True)
        assert schema_from_dict("boolean") == BooleanSchema()

    @pytest.mark.parametrize(
        "spec",
        [
            "date",
            {"type": "array"},
            {"type": "object", "properties": {"a": "string"}, "required": ["b"]},
            [1, 2],
            {},
        ],
    )
    def test_invalid(self, spec):
        """잘못된 정의는 ValueError."""
        with pytest.raises(ValueError):
            schema_from_dict(spec)

    def test_to_dict_round_trip(self):
        """명시형으로 바꿔도 같은 스키마."""
        schema = schema_from_dict({"summary": "string", "tags": ["x", "y"]})
        assert schema_from_dict(to_dict(schema)) == schema

    def test_describe_is_deterministic(self):
        schema = schema_from_dict({"summary": "string"})
        assert describe(schema) == describe(schema_from_dict({"summary": "string"}))


class TestCheck:
    """구조 검사 테스트."""

    schema = schema_from_dict({"summary": "string"})

    def test_match(self):
        assert check({"summary": "ok"}, self.schema) == []

    def test_extra_key(self):
        """선언되지 않은 키."""
        assert check({"summary": "ok", "extra": 1}, self.schema) == [("$.extra", "unexpected key")]

    def test_missing_key(self):
        """필수 키 누락."""
        assert check({}, self.schema) == [("$.summary", "missing required key")]

    def test_wrong_type(self):
        """타입 불일치."""
        assert check({"summary": 3}, self.schema) == [("$.summary", "expected string, got number")]

    def test_not_object(self):
        assert check(["summary"], self.schema) == [("$", "expected object, got array")]

    def test_bool_is_not_number(self):
        """bool 은 숫자가 아님."""
        assert check(True, NumberSchema()) != []

    def test_integer_only(self):
        assert check(1.5, NumberSchema(integer_only=True)) == [("$", "expected integer")]
        assert check(2.0, NumberSchema(integer_only=True)) == []

    def test_array_item_path(self):
        """배열 항목 경로."""
        schema = ArraySchema(items=StringSchema())
        assert check(["a", 1], schema) == [("$[1]", "expected string, got number")]

    def test_optional_key_may_be_absent(self):
        schema = schema_from_dict({"type": "object", "properties": {"a": "string", "b": "string"}, "required": ["a"]})
        assert check({"a": "x"}, schema) == []


class TestParseStructured:
    """응답 파싱 테스트."""

    def test_plain_json(self):
        assert parse_structured('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        """코드 펜스 하나는 허용."""
        assert parse_structured('```json\n{"a": 1}\n```') == {"a": 1}

    def test_prose_rejected(self):
        """설명 문장이 섞이면 ValueError."""
        with pytest.raises(ValueError):
            parse_structured('Sure! {"a": 1}')
