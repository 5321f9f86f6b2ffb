"""통합 설정 로더 모듈.

YAML 설정 파일(app.yaml, llm.yaml, guardrails.yaml)을 로드하고
환경변수 오버라이드를 적용해 불변 설정 객체를 만듭니다.
설정 객체는 파이프라인 호출마다 명시적으로 전달하며 전역 싱글톤으로 두지 않습니다.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import yaml

from guardpipe.core.exceptions import ConfigError
from guardpipe.core.logging import setup_logging
from guardpipe.schema import Schema, maybe_schema


# 기본 설정 디렉토리
DEFAULT_CONFIG_DIR = Path("configs")

FAIL_CLOSED = "closed"
FAIL_OPEN = "open"

BUILTIN_PII_CATEGORIES: FrozenSet[str] = frozenset(
    {"email", "phone", "ssn", "credit_card", "api_key"}
)

# 지시 무력화 / 역할 변경 / 구분자 위장 문구
DEFAULT_SUSPICIOUS_PATTERNS: Tuple[str, ...] = (
    r"\b(ignore|disregard|forget|override)\s+(all\s+|any\s+|the\s+|your\s+)*(previous|prior|above|earlier|preceding)\s+(instructions?|rules?|prompts?|directions?)",
    r"\b(ignore|disregard|forget)\s+(all\s+|any\s+|your\s+)+(instructions?|rules?|guidelines?)",
    r"\b(reveal|show|print|repeat|display|output)\s+(me\s+)?(your|the)\s+(system\s+|initial\s+|hidden\s+)?(prompt|instructions?)",
    r"\byou\s+are\s+now\s+(a|an|the|in|my)\b",
    r"\bpretend\s+(to\s+be|you\s+are)\b",
    r"\b(developer|dan|god)\s+mode\b",
    r"\bjailbreak",
    r"(disable|bypass)\s+(your\s+)?(safety|guardrails|filters)",
    r"<<<\s*/?\s*(end_)?user_input\s*>>>",
    r"<\|\s*(im_start|im_end|system|endoftext)\s*\|>",
    r"\[/?(inst|sys)\]",
    r"^\s*#{2,}\s*(system|instruction)",
    r"(이전|위의|모든)\s*(지시|명령|규칙|프롬프트).*?(무시|잊어|버려)",
)

DEFAULT_SYSTEM_PROMPT_TEXT = (
    "You are a careful assistant that answers questions about the text "
    "supplied by the user. Answer only from that text and general knowledge. "
    "If the question cannot be answered, reply with exactly the no-answer "
    "sentinel and nothing else."
)


def load_yaml(path: Path | str) -> Dict[str, Any]:
    """YAML 파일 로드."""
    path = Path(path)
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_env_or_default(key: str, default: Any) -> Any:
    """환경변수 또는 기본값 반환."""
    env_val = os.environ.get(key)
    if env_val is not None:
        # 타입 변환
        if isinstance(default, bool):
            return env_val.lower() in ("true", "1", "yes")
        if isinstance(default, int):
            return int(env_val)
        if isinstance(default, float):
            return float(env_val)
        return env_val
    return default


@dataclass(frozen=True)
class PromptTemplate:
    """버전이 붙은 고정 시스템 지시문. 사용자 입력으로 포맷팅하지 않습니다."""

    name: str
    version: str
    text: str


DEFAULT_SYSTEM_PROMPT = PromptTemplate(
    name="guarded-qa",
    version="1.0.0",
    text=DEFAULT_SYSTEM_PROMPT_TEXT,
)


@dataclass(frozen=True)
class AppConfig:
    """앱 전역 설정."""

    name: str = "guardpipe"
    version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = True
    log_file: Optional[str] = None


@dataclass(frozen=True)
class LLMConfig:
    """모델 호출 설정 (OpenAI 호환 chat completions)."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 1024
    timeout: float = 30.0


@dataclass(frozen=True)
class PipelineConfig:
    """가드레일 파이프라인 설정.

    한 번 만들어지면 바뀌지 않으며 호출마다 인자로 넘깁니다.
    값을 바꾸려면 ``with_overrides`` 로 새 객체를 만듭니다.
    """

    # 입력 검증
    max_length: int = 4000
    min_length: int = 1
    obfuscation_threshold: float = 0.3
    suspicious_patterns: Tuple[str, ...] = DEFAULT_SUSPICIOUS_PATTERNS
    # 위협 탐지
    threat_threshold: float = 0.5
    detector_fail_policy: str = FAIL_CLOSED
    detector_timeout: float = 5.0
    # PII
    pii_categories: FrozenSet[str] = BUILTIN_PII_CATEGORIES
    custom_pii_patterns: Tuple[Tuple[str, str], ...] = ()
    # 출력 검증
    schema: Optional[Schema] = None
    forbidden_patterns: Tuple[str, ...] = ()
    no_answer_sentinel: str = "NO_ANSWER"
    leak_ngram_size: int = 8
    # 모델 호출
    model_timeout: float = 30.0
    system_prompt: PromptTemplate = field(default=DEFAULT_SYSTEM_PROMPT)

    def __post_init__(self):
        if self.min_length < 0 or self.max_length < 1:
            raise ConfigError(f"잘못된 길이 제한: min={self.min_length}, max={self.max_length}")
        if self.min_length > self.max_length:
            raise ConfigError(f"min_length({self.min_length})가 max_length({self.max_length})보다 큽니다")
        for name in ("threat_threshold", "obfuscation_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} 값은 0~1 사이여야 합니다: {value}")
        if self.detector_fail_policy not in (FAIL_CLOSED, FAIL_OPEN):
            raise ConfigError(f"알 수 없는 detector_fail_policy: {self.detector_fail_policy}")
        unknown = set(self.pii_categories) - BUILTIN_PII_CATEGORIES
        if unknown:
            raise ConfigError(f"알 수 없는 PII 카테고리: {sorted(unknown)}")
        if self.detector_timeout <= 0 or self.model_timeout <= 0:
            raise ConfigError("timeout 값은 0보다 커야 합니다")
        if self.leak_ngram_size < 2:
            raise ConfigError("leak_ngram_size 는 2 이상이어야 합니다")
        if not self.no_answer_sentinel.strip():
            raise ConfigError("no_answer_sentinel 이 비어 있습니다")
        patterns = (
            list(self.suspicious_patterns)
            + list(self.forbidden_patterns)
            + [p for _, p in self.custom_pii_patterns]
        )
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigError(f"정규식 컴파일 실패: {pattern!r} ({e})") from e

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        """평면 dict 설정으로 생성.

        ``{max_length, min_length, threat_threshold, schema, forbidden_patterns, ...}``
        형식을 받으며 없는 키는 기본값을 씁니다.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"알 수 없는 설정 키: {sorted(unknown)}")
        return cls(**_coerce(dict(data)))

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """일부 값을 바꾼 새 설정 반환."""
        return dataclasses.replace(self, **_coerce(overrides))


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """YAML/dict 값을 PipelineConfig 필드 타입으로 변환."""
    out = dict(values)
    if "pii_categories" in out:
        out["pii_categories"] = frozenset(str(c) for c in out["pii_categories"])
    if "custom_pii_patterns" in out:
        custom = out["custom_pii_patterns"] or {}
        if isinstance(custom, Mapping):
            custom = custom.items()
        out["custom_pii_patterns"] = tuple((str(k), str(v)) for k, v in custom)
    for key in ("suspicious_patterns", "forbidden_patterns"):
        if key in out:
            out[key] = tuple(str(p) for p in (out[key] or ()))
    if "schema" in out:
        try:
            out["schema"] = maybe_schema(out["schema"])
        except ValueError as e:
            raise ConfigError(f"스키마 정의 오류: {e}") from e
    if "system_prompt" in out and isinstance(out["system_prompt"], Mapping):
        prompt = out["system_prompt"]
        out["system_prompt"] = PromptTemplate(
            name=prompt.get("name", DEFAULT_SYSTEM_PROMPT.name),
            version=str(prompt.get("version", DEFAULT_SYSTEM_PROMPT.version)),
            text=prompt.get("text", DEFAULT_SYSTEM_PROMPT.text),
        )
    return out


class Config:
    """통합 설정 로더.

    설정 디렉토리에서 섹션별 YAML 파일을 읽고, 섹션별 불변 설정 객체를 만들어 캐시합니다.
    """

    def __init__(self, config_dir: Path | str = DEFAULT_CONFIG_DIR):
        self.config_dir = Path(config_dir)
        self._app: Optional[AppConfig] = None
        self._llm: Optional[LLMConfig] = None
        self._pipeline: Optional[PipelineConfig] = None
        self._raw: Dict[str, Dict[str, Any]] = {}
        self._load_all()

    def _load_all(self) -> None:
        """모든 설정 파일 로드."""
        self._raw["app"] = load_yaml(self.config_dir / "app.yaml")
        self._raw["llm"] = load_yaml(self.config_dir / "llm.yaml")
        self._raw["guardrails"] = load_yaml(self.config_dir / "guardrails.yaml")

    @property
    def app(self) -> AppConfig:
        """앱 설정."""
        if self._app is None:
            raw = self._raw.get("app", {})
            app_cfg = raw.get("app", {})
            logging_cfg = raw.get("logging", {})

            self._app = AppConfig(
                name=app_cfg.get("name", "guardpipe"),
                version=app_cfg.get("version", "0.1.0"),
                environment=get_env_or_default("APP_ENV", app_cfg.get("environment", "development")),
                log_level=get_env_or_default("LOG_LEVEL", logging_cfg.get("level", "INFO")),
                log_json=get_env_or_default("LOG_JSON", logging_cfg.get("json", True)),
                log_file=logging_cfg.get("file"),
            )
        return self._app

    @property
    def llm(self) -> LLMConfig:
        """모델 호출 설정."""
        if self._llm is None:
            raw = self._raw.get("llm", {})
            provider = get_env_or_default("LLM_PROVIDER", raw.get("provider", "openai"))
            provider_cfg = raw.get(provider, {})

            # API 키는 환경변수 우선
            api_key_env = f"{provider.upper()}_API_KEY"
            api_key = get_env_or_default(api_key_env, provider_cfg.get("api_key", ""))

            self._llm = LLMConfig(
                provider=provider,
                model=get_env_or_default("LLM_MODEL", provider_cfg.get("model", "gpt-4o-mini")),
                api_key=api_key,
                base_url=provider_cfg.get("base_url"),
                temperature=provider_cfg.get("temperature", 0.0),
                max_tokens=provider_cfg.get("max_tokens", 1024),
                timeout=float(provider_cfg.get("timeout", 30.0)),
            )
        return self._llm

    @property
    def pipeline(self) -> PipelineConfig:
        """가드레일 파이프라인 설정."""
        if self._pipeline is None:
            raw = self._raw.get("guardrails", {})
            input_cfg = raw.get("input", {})
            threat_cfg = raw.get("threat", {})
            pii_cfg = raw.get("pii", {})
            output_cfg = raw.get("output", {})
            model_cfg = raw.get("model", {})

            values: Dict[str, Any] = {
                "max_length": get_env_or_default("GUARDPIPE_MAX_LENGTH", input_cfg.get("max_length", 4000)),
                "min_length": get_env_or_default("GUARDPIPE_MIN_LENGTH", input_cfg.get("min_length", 1)),
                "obfuscation_threshold": float(input_cfg.get("obfuscation_threshold", 0.3)),
                "threat_threshold": get_env_or_default(
                    "GUARDPIPE_THREAT_THRESHOLD", float(threat_cfg.get("threshold", 0.5))
                ),
                "detector_fail_policy": get_env_or_default(
                    "GUARDPIPE_DETECTOR_FAIL_POLICY", threat_cfg.get("fail_policy", FAIL_CLOSED)
                ),
                "detector_timeout": get_env_or_default(
                    "GUARDPIPE_DETECTOR_TIMEOUT", float(threat_cfg.get("timeout", 5.0))
                ),
                "model_timeout": get_env_or_default(
                    "GUARDPIPE_MODEL_TIMEOUT", float(model_cfg.get("timeout", 30.0))
                ),
                "no_answer_sentinel": output_cfg.get("no_answer_sentinel", "NO_ANSWER"),
                "leak_ngram_size": output_cfg.get("leak_ngram_size", 8),
            }
            if input_cfg.get("suspicious_patterns"):
                values["suspicious_patterns"] = input_cfg["suspicious_patterns"]
            if pii_cfg.get("categories"):
                values["pii_categories"] = pii_cfg["categories"]
            if pii_cfg.get("custom_patterns"):
                values["custom_pii_patterns"] = pii_cfg["custom_patterns"]
            if output_cfg.get("schema") is not None:
                values["schema"] = output_cfg["schema"]
            if output_cfg.get("forbidden_patterns"):
                values["forbidden_patterns"] = output_cfg["forbidden_patterns"]
            if raw.get("prompt"):
                values["system_prompt"] = raw["prompt"]

            self._pipeline = PipelineConfig.from_dict(values)
        return self._pipeline

    def get_raw(self, section: str) -> Dict[str, Any]:
        """원시 설정 데이터 반환."""
        return self._raw.get(section, {})


def load_config(config_dir: Path | str = DEFAULT_CONFIG_DIR) -> Config:
    """설정 디렉토리를 읽어 새 Config 반환."""
    return Config(config_dir)


def configure_logging(config: Config) -> logging.Logger:
    """app.yaml 의 logging 섹션(level/json/file)으로 루트 로거 설정."""
    app = config.app
    return setup_logging(level=app.log_level, log_file=app.log_file, json_format=app.log_json)
