"""Core 모듈.

공통 예외 클래스, 로깅 설정, 호출 단위 트레이서를 제공합니다.
"""

from guardpipe.core.exceptions import (
    GuardpipeError,
    ConfigError,
    ModelTimeoutError,
    ProviderError,
    DetectorError,
    InvocationCancelled,
)

__all__ = [
    "GuardpipeError",
    "ConfigError",
    "ModelTimeoutError",
    "ProviderError",
    "DetectorError",
    "InvocationCancelled",
]
