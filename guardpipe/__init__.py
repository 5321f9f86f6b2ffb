"""guardpipe: 모델 호출 한 번을 감싸는 가드레일 파이프라인."""

from guardpipe.config import Config, PipelineConfig, PromptTemplate, configure_logging, load_config
from guardpipe.guardrails import (
    ErrorKind,
    Failure,
    GuardedPipeline,
    PipelineResult,
    Success,
    run,
    run_sync,
)

__version__ = "0.1.0"

__all__ = [
    "Config",
    "ErrorKind",
    "Failure",
    "GuardedPipeline",
    "PipelineConfig",
    "PipelineResult",
    "PromptTemplate",
    "Success",
    "configure_logging",
    "load_config",
    "run",
    "run_sync",
]
