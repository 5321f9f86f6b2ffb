"""로깅 모듈 테스트."""

import json
import logging

import pytest

from guardpipe.core.logging import (
    ContextLogger,
    JSONFormatter,
    bind_invocation,
    get_invocation_id,
    get_logger,
    get_stage,
    set_invocation_id,
    set_stage,
    setup_logging,
)


class ListHandler(logging.Handler):
    """레코드를 모아 두는 핸들러."""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    """guardpipe.test 로거 레코드 수집."""
    handler = ListHandler()
    base = logging.getLogger("guardpipe.test")
    base.addHandler(handler)
    base.setLevel(logging.DEBUG)
    yield handler
    base.removeHandler(handler)


class TestInvocationContext:
    """호출 컨텍스트 테스트."""

    def test_default_none(self):
        """기본값은 None."""
        assert get_invocation_id() is None
        assert get_stage() is None

    def test_set_invocation_id_custom(self):
        assert set_invocation_id("inv-123") == "inv-123"
        assert get_invocation_id() == "inv-123"

    def test_set_invocation_id_auto_generate(self):
        """자동 생성 ID."""
        result = set_invocation_id()
        assert len(result) == 8  # uuid[:8]
        assert get_invocation_id() == result

    def test_bind_invocation_resets(self):
        """블록이 끝나면 이전 값으로 복원."""
        set_invocation_id("outer")
        with bind_invocation("inner") as invocation_id:
            set_stage("INPUT_CHECKED")
            assert invocation_id == "inner"
            assert get_invocation_id() == "inner"
            assert get_stage() == "INPUT_CHECKED"
        assert get_invocation_id() == "outer"
        assert get_stage() is None

    def test_bind_invocation_resets_on_error(self):
        with pytest.raises(RuntimeError):
            with bind_invocation("inner"):
                raise RuntimeError("boom")
        assert get_invocation_id() is None


class TestJSONFormatter:
    """JSON 포매터 테스트."""

    def _record(self, msg="hello", **extra_fields):
        record = logging.LogRecord("guardpipe.test", logging.INFO, __file__, 10, msg, None, None)
        if extra_fields:
            record.extra_fields = extra_fields
        return record

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(self._record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "guardpipe.test"
        assert data["message"] == "hello"
        assert data["timestamp"].endswith("Z")
        assert data["source"]["line"] == 10

    def test_includes_context(self):
        """호출 ID 와 단계 포함."""
        with bind_invocation("inv-1"):
            set_stage("ASSEMBLED")
            data = json.loads(JSONFormatter().format(self._record()))
        assert data["invocation_id"] == "inv-1"
        assert data["stage"] == "ASSEMBLED"

    def test_extra_fields_merged(self):
        data = json.loads(JSONFormatter().format(self._record(count=2, rules=["EMPTY"])))
        assert data["count"] == 2
        assert data["rules"] == ["EMPTY"]

    def test_non_ascii(self):
        """한글 메시지는 이스케이프하지 않음."""
        output = JSONFormatter().format(self._record("요청 거부"))
        assert "요청 거부" in output


class TestContextLogger:
    """ContextLogger 테스트."""

    def test_get_logger_type(self):
        assert isinstance(get_logger("guardpipe.test"), ContextLogger)

    def test_keyword_fields(self, captured):
        """키워드 인자는 extra_fields 로 묶임."""
        logger = get_logger("guardpipe.test")
        with bind_invocation("inv-9"):
            logger.info("파이프라인 시작", length=12, stage="input")
        record = captured.records[0]
        assert record.extra_fields == {"length": 12, "stage": "input"}
        assert record.invocation_id == "inv-9"

    def test_exc_info_passthrough(self, captured):
        logger = get_logger("guardpipe.test")
        try:
            raise ValueError("bad")
        except ValueError:
            logger.error("실패", exc_info=True)
        assert captured.records[0].exc_info is not None


class TestSetupLogging:
    """setup_logging 테스트."""

    def test_file_handler(self, tmp_path):
        """파일 로그 생성."""
        log_file = tmp_path / "logs" / "guardpipe.log"
        root = setup_logging(level="DEBUG", log_file=str(log_file))
        try:
            logging.getLogger("guardpipe.test").info("written")
            for handler in root.handlers:
                handler.flush()
            line = log_file.read_text(encoding="utf-8").strip().splitlines()[-1]
            assert json.loads(line)["message"] == "written"
        finally:
            for handler in root.handlers[:]:
                handler.close()
                root.removeHandler(handler)

    def test_plain_format(self):
        root = setup_logging(json_format=False)
        try:
            assert not isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
