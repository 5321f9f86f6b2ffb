"""커스텀 예외 클래스 모듈.

외부 협력자(모델 호출, 위협 탐지기)와 설정 계층이 던지는 예외를 정의합니다.
파이프라인은 이 예외들을 받아 Failure 값으로 변환하며,
호출자에게 예외가 그대로 전달되는 경우는 설정 오류나 프로그래밍 버그뿐입니다.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GuardpipeError(Exception):
    """패키지 기본 예외.

    모든 커스텀 예외의 기반 클래스입니다.
    """

    error_code: str = "INTERNAL_ERROR"
    message: str = "내부 오류가 발생했습니다"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """예외 정보를 딕셔너리로 반환."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigError(GuardpipeError):
    """설정값 오류."""

    error_code = "CONFIG_ERROR"
    message = "설정값이 유효하지 않습니다"


class ModelTimeoutError(GuardpipeError):
    """외부 모델 호출 시간 초과."""

    error_code = "TIMEOUT"
    message = "모델 호출 시간이 초과되었습니다"

    def __init__(
        self,
        message: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ProviderError(GuardpipeError):
    """모델 제공자 오류 (HTTP 오류, 연결 실패 등)."""

    error_code = "PROVIDER_ERROR"
    message = "모델 제공자 호출에 실패했습니다"

    def __init__(
        self,
        message: Optional[str] = None,
        status: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status = status


class DetectorError(GuardpipeError):
    """위협 탐지기 내부 실패 (응답 파싱 불가 등)."""

    error_code = "DETECTOR_ERROR"
    message = "위협 탐지에 실패했습니다"


class InvocationCancelled(GuardpipeError):
    """호출자가 취소 이벤트를 설정해 진행 중인 외부 호출을 포기함."""

    error_code = "CANCELLED"
    message = "호출자가 요청을 취소했습니다"
