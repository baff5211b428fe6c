"""Admission pipeline and its stages."""

import logging

import pytest

from chatgate.admission import Accept, AdmissionPipeline, Reject
from chatgate.admission.stages import (
    AuditStage,
    AuthenticationStage,
    RateLimitStage,
    Stage,
    TransformationStage,
    ValidationStage,
)
from chatgate.admission.stages.audit import categorize_performance, client_ip, log_response
from chatgate.admission.stages.transform import normalize_content, normalize_id
from chatgate.config.schema import AdmissionConfig, AuthConfig, RateLimitConfig, ValidationRules
from chatgate.protocol.platforms import CliAdapter, RestAdapter, TelegramAdapter
from chatgate.protocol.types import Source

from conftest import make_request


class ListSink:
    def __init__(self):
        self.records = []

    def emit(self, record):
        self.records.append(record)


class BrokenSink:
    def emit(self, record):
        raise OSError("disk full")


class ExplodingStage(Stage):
    name = "exploding"
    order = 3

    async def process(self, request):
        raise RuntimeError("boom")


def default_rules() -> dict[str, ValidationRules]:
    return {
        Source.TELEGRAM.value: TelegramAdapter.default_validation_rules(),
        Source.HTTP.value: RestAdapter.default_validation_rules(),
        Source.CLI.value: CliAdapter.default_validation_rules(),
    }


class TestRateLimitStage:
    @pytest.fixture
    def stage(self, clock):
        limits = {"telegram": RateLimitConfig(max_requests=3, window_ms=60_000, key_template="telegram:{user_id}:{chat_id}")}
        return RateLimitStage(limits, clock=clock)

    async def test_fourth_request_in_window_is_rejected(self, stage):
        for _ in range(3):
            assert isinstance(await stage.execute(make_request()), Accept)

        result = await stage.execute(make_request())

        assert isinstance(result, Reject)
        assert result.code == "RATE_LIMIT_EXCEEDED"
        assert result.status_code == 429
        assert result.metadata["retry_after"] == 60
        assert result.metadata["limit"] == 3
        assert result.metadata["key"] == "telegram:42:42"

    async def test_window_resets_after_expiry(self, stage, clock):
        for _ in range(3):
            await stage.execute(make_request())
        clock.advance(61)

        assert isinstance(await stage.execute(make_request()), Accept)
        assert stage.window("telegram:42:42").count == 1

    async def test_retry_after_shrinks_as_window_ages(self, stage, clock):
        for _ in range(3):
            await stage.execute(make_request())
        clock.advance(45.5)

        result = await stage.execute(make_request())
        assert result.metadata["retry_after"] == 15

    async def test_keys_are_independent(self, stage):
        for _ in range(3):
            await stage.execute(make_request(user_id="1", chat_id="1"))
        assert isinstance(await stage.execute(make_request(user_id="2", chat_id="2")), Accept)

    async def test_unconfigured_source_passes(self, stage):
        for _ in range(10):
            assert isinstance(await stage.execute(make_request(Source.CLI)), Accept)

    async def test_custom_key_func(self, clock):
        stage = RateLimitStage(
            {"http": RateLimitConfig(max_requests=1)}, key_func=lambda r: "everyone", clock=clock
        )
        await stage.execute(make_request(Source.HTTP, user_id="a"))
        result = await stage.execute(make_request(Source.HTTP, user_id="b"))
        assert result.metadata["key"] == "everyone"

    async def test_cleanup_and_status(self, stage, clock):
        await stage.execute(make_request())
        assert stage.status()["active_windows"] == 1

        clock.advance(120)
        assert stage.cleanup() == 1
        assert stage.window("telegram:42:42") is None
        assert stage.status()["limits"]["telegram"]["max_requests"] == 3


class TestAuthenticationStage:
    async def test_disabled_accepts_everything(self):
        stage = AuthenticationStage()
        result = await stage.execute(make_request(user_id="not-a-number"))
        assert isinstance(result, Accept)
        assert "auth" not in result.request.metadata

    async def test_telegram_checks(self):
        stage = AuthenticationStage(AuthConfig(enabled=True))

        ok = await stage.execute(make_request())
        assert ok.request.metadata["auth"] == {"authenticated": True, "method": "telegram"}

        bad_user = await stage.execute(make_request(user_id="abc"))
        assert (bad_user.code, bad_user.status_code) == ("INVALID_USER_ID", 401)

        bad_chat = await stage.execute(make_request(chat_id="group"))
        assert bad_chat.code == "INVALID_CHAT_ID"

    async def test_empty_content_is_invalid_request(self):
        stage = AuthenticationStage(AuthConfig(enabled=True))
        result = await stage.execute(make_request(content=""))
        assert (result.code, result.status_code) == ("INVALID_REQUEST", 400)

    async def test_api_keys(self):
        stage = AuthenticationStage(AuthConfig(enabled=True, api_keys=["secret"]))

        missing = await stage.execute(make_request(Source.HTTP))
        assert missing.code == "MISSING_API_KEY"

        wrong = await stage.execute(make_request(Source.HTTP, headers={"X-API-Key": "nope"}))
        assert wrong.code == "INVALID_API_KEY"

        bearer = await stage.execute(
            make_request(Source.HTTP, headers={"Authorization": "Bearer secret"})
        )
        assert bearer.request.metadata["auth"]["method"] == "api_key"

    async def test_http_session_format(self):
        stage = AuthenticationStage(AuthConfig(enabled=True))
        result = await stage.execute(make_request(Source.HTTP, session_id="bad id!"))
        assert result.code == "INVALID_SESSION_ID"

    async def test_cli_prefix(self):
        stage = AuthenticationStage(AuthConfig(enabled=True))
        result = await stage.execute(make_request(Source.CLI, user_id="root"))
        assert result.code == "INVALID_CLI_USER_ID"


class TestValidationStage:
    @pytest.fixture
    def stage(self):
        return ValidationStage(default_rules())

    async def test_blocks_http_event_handlers(self, stage):
        result = await stage.execute(
            make_request(Source.HTTP, content="hello <b>there</b> onclick=x")
        )
        assert isinstance(result, Reject)
        assert result.code == "INVALID_CONTENT"

    async def test_too_long(self, stage):
        result = await stage.execute(make_request(content="x" * 4097))
        assert result.code == "INVALID_CONTENT"

    async def test_blocked_start_command(self, stage):
        result = await stage.execute(make_request(content="/start"))
        assert result.code == "INVALID_CONTENT"

    async def test_identifier_rules(self, stage):
        assert (await stage.execute(make_request(user_id="abc"))).code == "INVALID_USER_ID"
        assert (await stage.execute(make_request(chat_id="x1"))).code == "INVALID_CHAT_ID"
        assert (
            await stage.execute(make_request(Source.HTTP, session_id="a" * 101))
        ).code == "INVALID_SESSION_ID"

    async def test_non_string_identifiers_are_rejected(self, stage):
        result = await stage.execute(make_request(Source.HTTP, user_id="alice", chat_id=["1"]))
        assert isinstance(result, Reject)
        assert result.code == "INVALID_CHAT_ID"

    async def test_accepts_and_annotates(self, stage):
        result = await stage.execute(make_request(content="  hello  "))

        assert isinstance(result, Accept)
        assert result.request.content == "hello"
        assert result.request.metadata["validation"] == {
            "sanitized": True,
            "original_length": 9,
            "sanitized_length": 5,
        }

    async def test_source_without_rules_passes(self):
        stage = ValidationStage({})
        result = await stage.execute(make_request(user_id="anything"))
        assert isinstance(result, Accept)
        assert result.request.content == "hi"

    def test_sanitize_strips_control_characters_for_cli(self):
        assert ValidationStage.sanitize("a\x07b\x00c", Source.CLI) == "abc"


class TestTransformationStage:
    async def test_normalizes_and_annotates(self):
        stage = TransformationStage()
        request = make_request(
            Source.HTTP,
            content="a &lt;b&gt;   c\r\n\n\n\nd",
            user_id="al.ice",
            headers={"User-Agent": "curl"},
        )

        result = await stage.execute(request)
        out = result.request

        assert out.content == "a <b> c\n\nd"
        assert out.user_id == "al_ice"
        assert out.headers == {"user-agent": "curl", "x-gateway-source": "http"}
        assert out.metadata["gateway"]["source"] == "http"
        assert out.metadata["gateway"]["security"]["authenticated"] is False

    async def test_idempotent(self):
        stage = TransformationStage()
        request = make_request(
            Source.HTTP, content="&amp;lt; **x**  y", user_id="a b", session_id="s/1"
        )

        once = (await stage.execute(request)).request
        twice = (await stage.execute(once)).request

        assert twice == once

    @pytest.mark.parametrize(
        "content, source",
        [
            ("**bold** and __it__", Source.TELEGRAM),
            ("\x1b[\x1b[31m0mred\x1b[0m “quoted”", Source.CLI),
            ("&amp;amp; &quot;x&quot;", Source.HTTP),
        ],
    )
    def test_normalize_content_is_stable(self, content, source):
        once = normalize_content(content, source)
        assert normalize_content(once, source) == once

    def test_telegram_markup(self):
        assert normalize_content("**bold** and __it__", Source.TELEGRAM) == "*bold* and _it_"

    def test_normalize_id(self):
        assert normalize_id("a.b c") == "a_b_c"
        assert normalize_id(None) is None
        assert normalize_id(17) == "17"


class TestAuditStage:
    async def test_emits_record(self):
        sink = ListSink()
        stage = AuditStage(sink)
        request = make_request(
            content="see https://example.com <now>",
            headers={"X-Forwarded-For": "10.0.0.1, 10.0.0.2", "User-Agent": "bot"},
        )

        result = await stage.execute(request)

        assert result.request.metadata["audit"] == {"logged": True}
        record = sink.records[0]
        assert record["type"] == "request"
        assert record["request"]["id"] == request.id
        assert record["request"]["header_count"] == 2
        assert record["security"] == {
            "ip": "10.0.0.1",
            "user_agent": "bot",
            "has_special_chars": True,
            "has_urls": True,
        }

    async def test_sink_failure_never_rejects(self):
        result = await AuditStage(BrokenSink()).execute(make_request())
        assert isinstance(result, Accept)
        assert result.request.metadata["audit"] == {"logged": False}

    def test_default_sink_writes_audit_logger(self, caplog):
        with caplog.at_level(logging.INFO, logger="chatgate.audit"):
            AuditStage().sink.emit(AuditStage.build_record(make_request()))
        assert caplog.records[0].audit["request"]["source"] == "telegram"

    def test_log_response(self, caplog):
        with caplog.at_level(logging.INFO, logger="chatgate.audit"):
            log_response(make_request(), False, 6200.0, "TEMPORARY_FAILURE")
        record = caplog.records[0].audit
        assert record["performance"] == "slow"
        assert record["error_code"] == "TEMPORARY_FAILURE"

    @pytest.mark.parametrize(
        "ms, category",
        [(0, "fast"), (999, "fast"), (1000, "normal"), (5000, "slow"), (10000, "very_slow")],
    )
    def test_categorize_performance(self, ms, category):
        assert categorize_performance(ms) == category

    def test_client_ip_missing(self):
        assert client_ip({}) is None


class TestAdmissionPipeline:
    @pytest.fixture
    def pipeline(self, clock):
        config = AdmissionConfig(
            rate_limits={"telegram": RateLimitConfig(max_requests=2, key_template="telegram:{user_id}")}
        )
        return AdmissionPipeline.from_config(config, default_rules(), audit_sink=ListSink(), clock=clock)

    async def test_accepts_through_all_stages(self, pipeline):
        result = await pipeline.process(make_request(content="  hello   world "))

        assert result.success
        assert result.error is None
        assert result.stages == ("rate_limit", "authentication", "validation", "transformation", "audit")
        assert result.request.content == "hello world"
        assert {"validation", "gateway", "audit"} <= set(result.request.metadata)

    async def test_first_rejection_stops_the_run(self, pipeline):
        result = await pipeline.process(make_request(content="x" * 5000))

        assert not result.success
        assert result.error.stage == "validation"
        assert result.stages == ("rate_limit", "authentication", "validation")

    async def test_rate_limit_rejection(self, pipeline):
        await pipeline.process(make_request())
        await pipeline.process(make_request())
        result = await pipeline.process(make_request())

        assert result.error.code == "RATE_LIMIT_EXCEEDED"
        assert result.error.status_code == 429
        assert result.error.metadata["retry_after"] == 60
        assert pipeline.stats()["rate_limited_requests"] == 1

    async def test_stage_exception_becomes_middleware_error(self):
        pipeline = AdmissionPipeline([ExplodingStage()])

        result = await pipeline.process(make_request())

        assert result.error.code == "MIDDLEWARE_ERROR"
        assert result.error.status_code == 500
        assert result.error.stage == "exploding"
        stats = pipeline.stats()
        assert stats["internal_errors"] == 1
        assert stats["stages"]["exploding"]["error_count"] == 1
        assert pipeline.active_requests == 0

    async def test_stats(self, pipeline):
        await pipeline.process(make_request())
        await pipeline.process(make_request(Source.CLI, content="x" * 3000))

        stats = pipeline.stats()
        assert stats["total_requests"] == 2
        assert stats["accepted_requests"] == 1
        assert stats["rejected_requests"] == 1
        assert stats["requests_by_source"] == {"telegram": 1, "cli": 1}
        assert stats["rejections_by_code"] == {"INVALID_CONTENT": 1}
        assert stats["stages"]["validation"]["rejection_count"] == 1

    async def test_health_reflects_internal_errors(self):
        pipeline = AdmissionPipeline([ExplodingStage()])
        assert pipeline.health_status() == "healthy"

        await pipeline.process(make_request())
        assert pipeline.error_rate() == 100.0
        assert pipeline.health_status() == "unhealthy"

    async def test_disabled_stage_is_skipped(self):
        pipeline = AdmissionPipeline([ExplodingStage(enabled=False), TransformationStage()])
        result = await pipeline.process(make_request())
        assert result.success
        assert result.stages == ("transformation",)

    def test_stage_management(self, pipeline):
        assert pipeline.get_stage("audit") is not None
        assert pipeline.remove_stage("audit")
        assert not pipeline.remove_stage("audit")
        assert [s.name for s in pipeline.stages][-1] == "transformation"
