"""호출 단위 처리 트레이서.

파이프라인 한 번의 호출이 거친 상태 전이를 순서대로 기록합니다.
트레이스는 호출마다 새로 만들어지며 전역에 보관하지 않습니다.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class TraceStep:
    """단일 처리 단계"""
    step_id: str
    state: str
    start_time: float = 0.0
    end_time: float = 0.0
    duration_ms: float = 0.0
    ok: bool = True
    detail: Optional[str] = None


@dataclass
class InvocationTrace:
    """파이프라인 호출 하나의 전체 기록"""
    invocation_id: str
    steps: List[TraceStep] = field(default_factory=list)

    @property
    def states(self) -> List[str]:
        return [s.state for s in self.steps]

    @property
    def total_duration_ms(self) -> float:
        return sum(s.duration_ms for s in self.steps)

    def record(
        self,
        state: str,
        ok: bool = True,
        detail: Optional[str] = None,
        started: Optional[float] = None,
    ) -> TraceStep:
        """단계 추가. started 가 없으면 소요 시간 0 (진입 상태 등)"""
        now = time.perf_counter()
        start = now if started is None else started
        step = TraceStep(
            step_id=f"step_{len(self.steps):03d}",
            state=state,
            start_time=start,
            end_time=now,
            duration_ms=(now - start) * 1000,
            ok=ok,
            detail=detail,
        )
        self.steps.append(step)
        return step

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invocation_id": self.invocation_id,
            "steps": [asdict(s) for s in self.steps],
            "summary": {
                "total_steps": len(self.steps),
                "total_duration_ms": self.total_duration_ms,
            },
        }

    def format_for_display(self) -> str:
        """사람이 읽기 쉬운 형식으로 포맷"""
        lines = [
            f"{'=' * 60}",
            f"TRACE: {self.invocation_id}",
            f"{'=' * 60}",
        ]
        for step in self.steps:
            status = "OK" if step.ok else "FAIL"
            line = f"[{step.step_id}] {step.state:<15} {status:<4} {step.duration_ms:.1f}ms"
            if step.detail:
                line += f"  ({step.detail})"
            lines.append(line)
        lines.append(f"{'-' * 60}")
        lines.append(f"total: {self.total_duration_ms:.1f}ms")
        return "\n".join(lines)
