"""호출 트레이서 테스트."""

import time

from guardpipe.core.tracer import InvocationTrace


class TestInvocationTrace:
    """InvocationTrace 테스트."""

    def test_record_without_start(self):
        """시작 시각이 없으면 소요 시간 0."""
        trace = InvocationTrace(invocation_id="abc")
        step = trace.record("RECEIVED")
        assert step.step_id == "step_000"
        assert step.duration_ms == 0.0
        assert trace.states == ["RECEIVED"]

    def test_record_with_start(self):
        """시작 시각부터 소요 시간 계산."""
        trace = InvocationTrace(invocation_id="abc")
        started = time.perf_counter() - 0.01
        step = trace.record("MODEL_CALLED", started=started)
        assert step.duration_ms >= 10.0
        assert trace.total_duration_ms == step.duration_ms

    def test_to_dict(self):
        trace = InvocationTrace(invocation_id="abc")
        trace.record("RECEIVED")
        trace.record("REJECTED", ok=False, detail="input:INPUT_INVALID")
        data = trace.to_dict()
        assert data["invocation_id"] == "abc"
        assert data["summary"]["total_steps"] == 2
        assert data["steps"][1]["ok"] is False

    def test_format_for_display(self):
        trace = InvocationTrace(invocation_id="abc")
        trace.record("RECEIVED")
        trace.record("REJECTED", ok=False, detail="input:INPUT_INVALID")
        output = trace.format_for_display()
        assert "TRACE: abc" in output
        assert "FAIL" in output
        assert "(input:INPUT_INVALID)" in output
