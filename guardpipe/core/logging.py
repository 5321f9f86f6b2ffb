"""JSON 구조화 로깅 모듈.

표준 logging 기반 JSON 포맷 로깅을 제공합니다.
호출 ID와 현재 단계는 contextvars로 관리하므로 동시에 실행되는
파이프라인 호출끼리 서로의 컨텍스트를 보지 않습니다.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

# 호출 컨텍스트
invocation_id_var: ContextVar[Optional[str]] = ContextVar("invocation_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)


def get_invocation_id() -> Optional[str]:
    """현재 호출 ID 반환."""
    return invocation_id_var.get()


def set_invocation_id(invocation_id: Optional[str] = None) -> str:
    """호출 ID 설정."""
    if invocation_id is None:
        invocation_id = str(uuid.uuid4())[:8]
    invocation_id_var.set(invocation_id)
    return invocation_id


def get_stage() -> Optional[str]:
    """현재 처리 단계 반환."""
    return stage_var.get()


def set_stage(stage: Optional[str]) -> None:
    """처리 단계 설정."""
    stage_var.set(stage)


@contextmanager
def bind_invocation(invocation_id: Optional[str] = None) -> Iterator[str]:
    """블록 안에서만 호출 ID 와 단계를 설정하고 끝나면 이전 값으로 되돌림."""
    id_token = invocation_id_var.set(invocation_id or str(uuid.uuid4())[:8])
    stage_token = stage_var.set(None)
    try:
        yield invocation_id_var.get()
    finally:
        stage_var.reset(stage_token)
        invocation_id_var.reset(id_token)


class JSONFormatter(logging.Formatter):
    """JSON 포맷 로그 포매터."""

    def format(self, record: logging.LogRecord) -> str:
        """로그 레코드를 JSON 문자열로 포맷."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        invocation_id = get_invocation_id()
        if invocation_id:
            log_data["invocation_id"] = invocation_id

        stage = get_stage()
        if stage:
            log_data["stage"] = stage

        # 추가 필드
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ContextLogger(logging.LoggerAdapter):
    """호출 컨텍스트를 포함하는 로거 어댑터.

    ``logger.info("msg", stage="input", rules=[...])`` 처럼 키워드 인자로
    넘긴 값은 ``extra_fields`` 로 묶여 JSON 로그에 합쳐집니다.
    """

    _reserved = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """로그 메시지 처리."""
        extra = kwargs.get("extra", {})
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._reserved}

        invocation_id = get_invocation_id()
        if invocation_id:
            extra["invocation_id"] = invocation_id

        if fields:
            extra["extra_fields"] = {**extra.get("extra_fields", {}), **fields}

        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    json_format: bool = True,
) -> logging.Logger:
    """로깅 설정.

    Args:
        level: 로그 레벨
        log_file: 로그 파일 경로 (None이면 콘솔만)
        max_bytes: 로그 파일 최대 크기
        backup_count: 백업 파일 수
        json_format: JSON 포맷 사용 여부

    Returns:
        설정된 루트 로거
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # 파일 핸들러 (로테이션)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> ContextLogger:
    """컨텍스트 로거 반환.

    Args:
        name: 로거 이름

    Returns:
        ContextLogger 인스턴스
    """
    logger = logging.getLogger(name)
    return ContextLogger(logger, {})
