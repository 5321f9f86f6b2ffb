"""출력 스키마 디스크립터.

모델 응답의 기대 구조를 태그드 변형(string/number/boolean/enum/object/array)으로
표현하고, 파싱된 값이 구조에 맞는지 검사합니다.

설정 파일에서는 두 가지 형식을 모두 받습니다::

    # 축약형: 모든 키 필수
    schema:
      summary: string
      score: number

    # 명시형
    schema:
      type: object
      properties:
        summary: {type: string}
        tags: {type: array, items: string}
      required: [summary]
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

_EXPLICIT_KEYS = {"type", "properties", "required", "items", "values", "enum", "description"}
_SCALAR_NAMES = {"string", "number", "integer", "boolean"}
_FENCE_RE = re.compile(r"^```(?:json)?[ \t]*\n(.*?)\n?```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class StringSchema:
    pass


@dataclass(frozen=True)
class NumberSchema:
    integer_only: bool = False


@dataclass(frozen=True)
class BooleanSchema:
    pass


@dataclass(frozen=True)
class EnumSchema:
    values: Tuple[str, ...]


@dataclass(frozen=True)
class ArraySchema:
    items: "Schema"


@dataclass(frozen=True)
class ObjectSchema:
    properties: Tuple[Tuple[str, "Schema"], ...]
    required: FrozenSet[str] = frozenset()

    @property
    def fields(self) -> Dict[str, "Schema"]:
        return dict(self.properties)


Schema = Union[StringSchema, NumberSchema, BooleanSchema, EnumSchema, ArraySchema, ObjectSchema]


def schema_from_dict(spec: Any) -> Schema:
    """dict/YAML 표현을 Schema 로 변환.

    Raises:
        ValueError: 알 수 없는 타입이나 잘못된 구조
    """
    if isinstance(spec, (StringSchema, NumberSchema, BooleanSchema, EnumSchema, ArraySchema, ObjectSchema)):
        return spec

    if isinstance(spec, str):
        return _scalar(spec)

    if isinstance(spec, list):
        # 문자열 목록은 enum 축약형
        if spec and all(isinstance(v, str) for v in spec):
            return EnumSchema(values=tuple(spec))
        raise ValueError(f"unsupported list schema: {spec!r}")

    if not isinstance(spec, Mapping) or not spec:
        raise ValueError(f"unsupported schema: {spec!r}")

    if "type" in spec and isinstance(spec["type"], str) and set(spec) <= _EXPLICIT_KEYS:
        return _explicit(spec)

    if "enum" in spec and set(spec) <= _EXPLICIT_KEYS:
        return EnumSchema(values=tuple(str(v) for v in spec["enum"]))

    # 축약형 객체
    properties = tuple((str(k), schema_from_dict(v)) for k, v in spec.items())
    return ObjectSchema(properties=properties, required=frozenset(k for k, _ in properties))


def _scalar(name: str) -> Schema:
    name = name.strip().lower()
    if name == "string":
        return StringSchema()
    if name == "number":
        return NumberSchema()
    if name == "integer":
        return NumberSchema(integer_only=True)
    if name == "boolean":
        return BooleanSchema()
    raise ValueError(f"unknown schema type: {name!r}")


def _explicit(spec: Mapping[str, Any]) -> Schema:
    kind = spec["type"].strip().lower()
    if kind in _SCALAR_NAMES:
        return _scalar(kind)
    if kind == "enum":
        values = spec.get("values", spec.get("enum"))
        if not values:
            raise ValueError("enum schema requires non-empty 'values'")
        return EnumSchema(values=tuple(str(v) for v in values))
    if kind == "array":
        if "items" not in spec:
            raise ValueError("array schema requires 'items'")
        return ArraySchema(items=schema_from_dict(spec["items"]))
    if kind == "object":
        props = spec.get("properties") or {}
        properties = tuple((str(k), schema_from_dict(v)) for k, v in props.items())
        names = {k for k, _ in properties}
        required = spec.get("required")
        required_set = frozenset(names if required is None else (str(r) for r in required))
        unknown = required_set - names
        if unknown:
            raise ValueError(f"required keys not declared in properties: {sorted(unknown)}")
        return ObjectSchema(properties=properties, required=required_set)
    raise ValueError(f"unknown schema type: {kind!r}")


def check(value: Any, schema: Schema, path: str = "$") -> List[Tuple[str, str]]:
    """값을 스키마와 비교해 (경로, 문제) 목록을 반환. 빈 목록이면 일치."""
    if isinstance(schema, StringSchema):
        return [] if isinstance(value, str) else [(path, f"expected string, got {_type_name(value)}")]

    if isinstance(schema, NumberSchema):
        # bool 은 int 의 하위 클래스지만 숫자로 취급하지 않음
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return [(path, f"expected number, got {_type_name(value)}")]
        if schema.integer_only and not (isinstance(value, int) or float(value).is_integer()):
            return [(path, "expected integer")]
        return []

    if isinstance(schema, BooleanSchema):
        return [] if isinstance(value, bool) else [(path, f"expected boolean, got {_type_name(value)}")]

    if isinstance(schema, EnumSchema):
        if not isinstance(value, str) or value not in schema.values:
            return [(path, f"value {value!r} not in {list(schema.values)}")]
        return []

    if isinstance(schema, ArraySchema):
        if not isinstance(value, list):
            return [(path, f"expected array, got {_type_name(value)}")]
        problems: List[Tuple[str, str]] = []
        for i, item in enumerate(value):
            problems.extend(check(item, schema.items, f"{path}[{i}]"))
        return problems

    if isinstance(schema, ObjectSchema):
        if not isinstance(value, dict):
            return [(path, f"expected object, got {_type_name(value)}")]
        problems = []
        fields = schema.fields
        for key in fields:
            if key not in value:
                if key in schema.required:
                    problems.append((f"{path}.{key}", "missing required key"))
                continue
            problems.extend(check(value[key], fields[key], f"{path}.{key}"))
        for key in value:
            if key not in fields:
                problems.append((f"{path}.{key}", "unexpected key"))
        return problems

    raise TypeError(f"not a schema: {schema!r}")


def to_dict(schema: Schema) -> Dict[str, Any]:
    """명시형 dict 로 변환."""
    if isinstance(schema, StringSchema):
        return {"type": "string"}
    if isinstance(schema, NumberSchema):
        return {"type": "integer" if schema.integer_only else "number"}
    if isinstance(schema, BooleanSchema):
        return {"type": "boolean"}
    if isinstance(schema, EnumSchema):
        return {"type": "enum", "values": list(schema.values)}
    if isinstance(schema, ArraySchema):
        return {"type": "array", "items": to_dict(schema.items)}
    if isinstance(schema, ObjectSchema):
        return {
            "type": "object",
            "properties": {k: to_dict(v) for k, v in schema.properties},
            "required": [k for k, _ in schema.properties if k in schema.required],
        }
    raise TypeError(f"not a schema: {schema!r}")


def describe(schema: Schema) -> str:
    """프롬프트에 넣을 결정적인 JSON 설명."""
    return json.dumps(to_dict(schema), ensure_ascii=False, indent=2)


def parse_structured(text: str) -> Any:
    """모델 응답을 JSON 문서로 파싱.

    코드 펜스 하나로 감싼 경우만 허용하고 앞뒤 설명 문장은 허용하지 않습니다.

    Raises:
        ValueError: JSON 으로 파싱할 수 없음
    """
    body = text.strip()
    fence = _FENCE_RE.match(body)
    if fence:
        body = fence.group(1).strip()
    return json.loads(body)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def maybe_schema(spec: Optional[Any]) -> Optional[Schema]:
    """None 은 그대로, 나머지는 schema_from_dict."""
    return None if spec is None else schema_from_dict(spec)
