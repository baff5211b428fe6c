"""Message router: breaker-gated, retried dispatch to the engine."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from chatgate.config.schema import CircuitBreakerConfig, RetryConfig, RouterConfig
from chatgate.protocol import MessageCodec
from chatgate.protocol.types import ActionKind, Platform, ResponseAction
from chatgate.reliability import CircuitBreakerMonitor, CircuitState
from chatgate.routing import EchoEngine, EngineReply, MessageRouter, build_native_update
from chatgate.routing.router import DEFAULT_REPLY_TEXT, UNAVAILABLE_TEXT
from chatgate.sessions import SessionStore

codec = MessageCodec()


def telegram_message(text: str = "hello"):
    return codec.parse(
        {
            "update_id": 500,
            "message": {
                "message_id": 9,
                "date": 1_700_000_000,
                "chat": {"id": -100, "type": "group"},
                "from": {"id": 42, "first_name": "Ada"},
                "text": text,
            },
        },
        Platform.TELEGRAM,
    )


def rest_message(text: str = "hello"):
    return codec.parse({"message": text, "userId": "alice"}, Platform.REST_API)


def router_config(**breaker) -> RouterConfig:
    breaker.setdefault("minimum_requests", 10)
    return RouterConfig(circuit_breaker=CircuitBreakerConfig(**breaker))


class TestNativeUpdate:
    def test_telegram_fields_are_kept(self):
        update = build_native_update(telegram_message())

        assert update["update_id"] == 500
        assert update["message"]["message_id"] == 9
        assert update["message"]["chat"] == {"id": -100, "type": "group"}
        assert update["message"]["from"]["first_name"] == "Ada"
        assert update["gateway"]["origin"] == "telegram"

    def test_string_ids_get_numeric_surrogates(self):
        message = rest_message()
        update = build_native_update(message)

        assert isinstance(update["message"]["from"]["id"], int)
        assert update["message"]["chat"]["type"] == "private"
        assert update["gateway"]["user_ref"] == "alice"
        assert update["gateway"]["session_id"] == "api_session_alice"
        assert update["gateway"]["message_ref"] == message.id


class TestEngineReply:
    def test_coerce_variants(self):
        assert EngineReply.coerce("hi").text == "hi"
        assert EngineReply.coerce(None).text == ""
        assert EngineReply.coerce({"content": "from content"}).text == "from content"

    def test_coerce_mapping_with_actions(self):
        reply = EngineReply.coerce(
            {
                "text": "pick",
                "confidence": "0.5",
                "tools_used": ["search"],
                "actions": [{"label": "Docs", "type": "url", "data": "https://x"}],
            }
        )
        assert reply.confidence == 0.5
        assert reply.tools_used == ("search",)
        assert reply.actions[0] == ResponseAction(
            id="action_0", label="Docs", kind=ActionKind.URL, data="https://x"
        )

    def test_coerce_object(self):
        class Result:
            text = "obj"
            tokens_used = 12

        reply = EngineReply.coerce(Result())
        assert (reply.text, reply.tokens_used) == ("obj", 12)

    def test_coerce_tolerates_bad_fields(self):
        reply = EngineReply.coerce(
            {
                "text": "ok",
                "confidence": None,
                "tokens_used": "many",
                "tools_used": "search",
                "metadata": ["not", "a", "mapping"],
                "actions": [{"data": "x"}, "junk", {"label": "Go", "type": "teleport"}],
            }
        )
        assert reply.confidence == 1.0
        assert reply.tokens_used is None
        assert reply.tools_used == ()
        assert reply.metadata == {}
        assert [(a.id, a.label, a.kind) for a in reply.actions] == [("action_2", "Go", ActionKind.CALLBACK)]


class TestMessageRouter:
    async def test_successful_dispatch(self, sleep, clock):
        router = MessageRouter(EchoEngine(), router_config(), sleep=sleep, clock=clock)
        message = telegram_message("ping")

        response = await router.route_message(message)

        assert not response.is_error
        assert response.text == "Echo: ping"
        assert response.request_id == message.id
        assert response.format.markdown
        assert response.processing.tools_used == ("echo",)
        meta = response.content.metadata
        assert meta["origin_platform"] == "telegram"
        assert meta["session_id"] == message.session_id
        assert meta["dispatch"] == {
            "success": True,
            "attempts": 1,
            "circuit_state": "closed",
            "error": None,
        }

    async def test_empty_reply_gets_default_text(self, sleep, clock):
        engine = AsyncMock()
        engine.handle.return_value = ""
        router = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)

        response = await router.route_message(rest_message())
        assert response.text == DEFAULT_REPLY_TEXT

    async def test_failing_engine_is_retried_then_contained(self, sleep, clock):
        engine = AsyncMock()
        engine.handle.side_effect = ConnectionError("engine down")
        router = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)
        message = telegram_message()

        response = await router.route_message(message)

        assert response.is_error
        assert response.content.metadata["error_type"] == "temporary_failure"
        assert response.content.metadata["dispatch"]["attempts"] == 3
        assert engine.handle.await_count == 3
        assert sleep.delays == [1.0, 2.0]
        breaker = router.breaker_for(Platform.TELEGRAM)
        assert breaker.metrics.failed_calls == 3
        assert breaker.state is CircuitState.CLOSED

    async def test_recovers_on_retry(self, sleep, clock):
        engine = AsyncMock()
        engine.handle.side_effect = [ConnectionError("blip"), "back"]
        router = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)

        response = await router.route_message(telegram_message())

        assert response.text == "back"
        assert response.content.metadata["dispatch"]["attempts"] == 2

    async def test_open_circuit_short_circuits(self, sleep, clock):
        engine = AsyncMock()
        engine.handle.side_effect = ConnectionError("engine down")
        config = router_config(failure_threshold=1, minimum_requests=1)
        config.retry = RetryConfig(max_attempts=1)
        router = MessageRouter(engine, config, sleep=sleep, clock=clock)

        await router.route_message(telegram_message())
        breaker = router.breaker_for(Platform.TELEGRAM)
        assert breaker.state is CircuitState.OPEN

        response = await router.route_message(telegram_message())

        assert engine.handle.await_count == 1
        assert breaker.metrics.rejected_calls == 1
        assert breaker.metrics.failed_calls == 1
        assert response.text == UNAVAILABLE_TEXT
        assert response.content.metadata["dispatch"]["circuit_state"] == "open"

    async def test_breakers_are_per_platform(self, sleep, clock):
        engine = AsyncMock()
        engine.handle.side_effect = ConnectionError("engine down")
        config = router_config(failure_threshold=1, minimum_requests=1)
        config.retry = RetryConfig(max_attempts=1)
        monitor = CircuitBreakerMonitor(clock=clock)
        router = MessageRouter(engine, config, monitor=monitor, sleep=sleep, clock=clock)

        await router.route_message(telegram_message())
        await router.route_message(rest_message())

        assert engine.handle.await_count == 2
        assert set(router.breaker_status()) == {"engine:telegram", "engine:rest_api"}
        assert monitor.summary()["open"] == 2

    async def test_shared_breaker_scope(self, sleep, clock):
        config = router_config()
        config.breaker_scope = "engine"
        router = MessageRouter(EchoEngine(), config, sleep=sleep, clock=clock)

        assert router.breaker_for(Platform.CLI) is router.breaker_for(Platform.TELEGRAM)
        assert router.breaker_for(Platform.CLI).name == "engine"

    async def test_dispatch_timeout(self, sleep, clock):
        async def stall(update):
            await asyncio.sleep(5)

        engine = AsyncMock()
        engine.handle.side_effect = stall
        config = router_config()
        config.dispatch_timeout_ms = 10
        config.retry = RetryConfig(max_attempts=1)
        router = MessageRouter(engine, config, sleep=sleep, clock=clock)

        response = await router.route_message(rest_message())

        assert response.is_error
        assert "TimeoutError" in response.content.metadata["dispatch"]["error"]

    async def test_conversion_failure(self, sleep, clock):
        engine = AsyncMock()
        router = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)
        broken = replace(telegram_message(), timestamp=None)

        response = await router.route_message(broken)

        assert response.content.metadata["error_type"] == "conversion_failed"
        engine.handle.assert_not_awaited()

    async def test_session_is_counted(self, sleep, clock, utc_clock):
        sessions = SessionStore(clock=utc_clock)
        message = telegram_message()
        await sessions.create("42", Platform.TELEGRAM, session_id=message.session_id)
        router = MessageRouter(EchoEngine(), router_config(), sessions=sessions, sleep=sleep, clock=clock)

        await router.route_message(message)

        session = await sessions.get(message.session_id)
        assert session.context.message_count == 1

    async def test_missing_session_does_not_fail_dispatch(self, sleep, clock):
        router = MessageRouter(
            EchoEngine(), router_config(), sessions=SessionStore(), sleep=sleep, clock=clock
        )
        response = await router.route_message(rest_message())
        assert not response.is_error

    async def test_capabilities(self, sleep, clock):
        router = MessageRouter(EchoEngine(), router_config(), sleep=sleep, clock=clock)
        assert [c.name for c in await router.get_available_capabilities()] == ["echo"]

        engine = AsyncMock()
        engine.list_capabilities.side_effect = RuntimeError("no tools")
        failing = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)
        assert await failing.get_available_capabilities() == []

    @pytest.mark.parametrize("origin", [Platform.CLI, Platform.REST_API])
    async def test_error_response_tags_origin(self, origin, sleep, clock):
        engine = AsyncMock()
        engine.handle.side_effect = ValueError("bad")
        config = router_config()
        config.retry = RetryConfig(max_attempts=1)
        router = MessageRouter(engine, config, sleep=sleep, clock=clock)
        raw = {"text": "hi", "userId": "cli-user-a"} if origin is Platform.CLI else {"message": "hi", "userId": "a"}

        response = await router.route_message(codec.parse(raw, origin))

        assert response.content.metadata["origin_platform"] == origin.value

    async def test_malformed_optional_fields_are_tolerated(self, sleep, clock):
        engine = AsyncMock()
        engine.handle.return_value = {"text": "hi", "confidence": None, "actions": [{"data": "x"}]}
        router = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)

        response = await router.route_message(telegram_message())

        assert not response.is_error
        assert response.text == "hi"
        assert response.processing.confidence == 1.0
        assert response.content.actions == ()
        assert engine.handle.await_count == 1

    async def test_unusable_reply_is_not_redispatched(self, sleep, clock, monkeypatch):
        def broken(cls, result):
            raise ValueError("unusable reply")

        monkeypatch.setattr(EngineReply, "coerce", classmethod(broken))
        engine = AsyncMock()
        engine.handle.return_value = {"text": "hi"}
        router = MessageRouter(engine, router_config(), sleep=sleep, clock=clock)

        response = await router.route_message(telegram_message())

        assert response.is_error
        assert response.content.metadata["error_type"] == "conversion_failed"
        assert response.content.metadata["dispatch"]["attempts"] == 1
        assert engine.handle.await_count == 1
        assert sleep.delays == []


class TestBreakerPresets:
    def test_plain_config_by_default(self, sleep, clock):
        router = MessageRouter(EchoEngine(), router_config(failure_threshold=7), sleep=sleep, clock=clock)
        assert router.breaker_for(Platform.TELEGRAM).config.failure_threshold == 7

    def test_preset_by_alias(self, sleep, clock):
        config = RouterConfig(circuit_breaker_preset="db")
        router = MessageRouter(EchoEngine(), config, sleep=sleep, clock=clock)

        breaker_config = router.breaker_for(Platform.TELEGRAM).config
        assert breaker_config.failure_threshold == 2
        assert breaker_config.slow_call_threshold_ms == 1_000

    def test_explicit_fields_override_preset(self, sleep, clock):
        config = RouterConfig(
            circuit_breaker_preset="telegram",
            circuit_breaker=CircuitBreakerConfig(minimum_requests=1),
        )
        router = MessageRouter(EchoEngine(), config, sleep=sleep, clock=clock)

        breaker_config = router.breaker_for(Platform.TELEGRAM).config
        assert breaker_config.minimum_requests == 1
        assert breaker_config.failure_threshold == 3
