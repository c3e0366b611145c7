"""
Unit Tests for the Event Handler Middleware.

Covers the call_next contract enforced by compose_middleware() and each
stage of the default pipeline.
"""

import asyncio
from unittest.mock import patch

import pytest
import structlog
from pydantic import BaseModel

from modules.backend.core.exceptions import (
    CircuitOpenError,
    EventValidationError,
    HandlerTimeoutError,
    MiddlewareError,
)
from modules.backend.events.circuit_breaker import CircuitBreakerRegistry
from modules.backend.events.config import CircuitBreakerConfig
from modules.backend.events.middleware import (
    compose_middleware,
    create_circuit_breaker_middleware,
    create_default_pipeline,
    create_idempotency_middleware,
    create_timeout_middleware,
    error_handling_middleware,
    execute_with_middleware,
    logging_middleware,
    validation_middleware,
)
from modules.backend.events.schemas import EventOptions, HandlerConfig


class Payload(BaseModel):
    note_id: str
    count: int


def _config(handler, **options) -> HandlerConfig:
    opts = EventOptions(module=options.pop("module", "test"), **options)
    return HandlerConfig(handler=handler, options=opts, id=opts.handler_id or "test-handler")


def _recorder(calls: list):
    async def handler(event):
        calls.append(event)

    return handler


class TestComposeMiddleware:
    """Tests for the call_next contract."""

    @pytest.mark.asyncio
    async def test_runs_stages_outermost_first(self, make_event):
        """Should enter stages in order and unwind in reverse."""
        order = []

        def stage(name):
            async def _stage(event, handler, options, call_next):
                order.append(f"{name}:in")
                await call_next()
                order.append(f"{name}:out")

            return _stage

        calls = []
        pipeline = compose_middleware([stage("a"), stage("b")])

        await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)

        assert order == ["a:in", "b:in", "b:out", "a:out"]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_call_next_twice_raises(self, make_event):
        """Should raise MiddlewareError when a stage calls call_next() twice."""

        async def greedy(event, handler, options, call_next):
            await call_next()
            await call_next()

        pipeline = compose_middleware([greedy])

        with pytest.raises(MiddlewareError, match="multiple times"):
            await execute_with_middleware(make_event(), _config(_recorder([])), pipeline)

    @pytest.mark.asyncio
    async def test_returning_without_call_next_raises(self, make_event):
        """Should raise MiddlewareError when a stage neither calls nor skips."""

        async def lazy(event, handler, options, call_next):
            return None

        calls = []
        pipeline = compose_middleware([lazy])

        with pytest.raises(MiddlewareError, match="lazy"):
            await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)
        assert calls == []

    @pytest.mark.asyncio
    async def test_skip_short_circuits(self, make_event):
        """Should treat call_next.skip() as a successful short-circuit."""
        order = []

        async def outer(event, handler, options, call_next):
            order.append("outer")
            await call_next()

        async def skipper(event, handler, options, call_next):
            call_next.skip("not needed")

        async def never(event, handler, options, call_next):
            order.append("never")
            await call_next()

        calls = []
        pipeline = compose_middleware([outer, skipper, never])

        await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)

        assert order == ["outer"]
        assert calls == []

    @pytest.mark.asyncio
    async def test_skip_after_call_raises(self, make_event):
        """Should reject skip() once call_next() has run."""

        async def confused(event, handler, options, call_next):
            await call_next()
            call_next.skip()

        pipeline = compose_middleware([confused])

        with pytest.raises(MiddlewareError):
            await execute_with_middleware(make_event(), _config(_recorder([])), pipeline)

    @pytest.mark.asyncio
    async def test_composed_pipelines_nest(self, make_event):
        """Should accept a composed pipeline as a stage of another."""
        order = []

        async def mark(event, handler, options, call_next):
            order.append("inner")
            await call_next()

        calls = []
        pipeline = compose_middleware([compose_middleware([mark]), compose_middleware([])])

        await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)

        assert order == ["inner"]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_handler_receives_copy(self, make_event):
        """Should hand the handler a copy, leaving the caller's event untouched."""

        async def mutate(event, handler, options, call_next):
            event.data = {"changed": True}
            await call_next()

        calls = []
        event = make_event(data={"original": True})

        await execute_with_middleware(event, _config(_recorder(calls)), compose_middleware([mutate]))

        assert calls[0].data == {"changed": True}
        assert event.data == {"original": True}

    @pytest.mark.asyncio
    async def test_in_place_payload_change_stays_with_one_handler(self, make_event):
        """Should copy nested payload data, so a handler mutating it in place does not affect the next."""
        seen = []

        async def appender(event):
            event.data["items"].append("added")

        async def reader(event):
            seen.append(list(event.data["items"]))

        event = make_event(data={"items": ["original"]})
        pipeline = compose_middleware([])

        await execute_with_middleware(event, _config(appender), pipeline)
        await execute_with_middleware(event, _config(reader), pipeline)

        assert seen == [["original"]]
        assert event.data == {"items": ["original"]}


class TestValidationMiddleware:
    @pytest.mark.asyncio
    async def test_coerces_data_to_schema(self, make_event):
        """Should replace event.data with the validated model."""
        calls = []
        config = _config(_recorder(calls), schema=Payload)

        await execute_with_middleware(
            make_event(data={"note_id": "n1", "count": "3"}),
            config,
            compose_middleware([validation_middleware]),
        )

        assert calls[0].data == Payload(note_id="n1", count=3)

    @pytest.mark.asyncio
    async def test_rejects_invalid_data(self, make_event):
        """Should raise EventValidationError and never call the handler."""
        calls = []
        config = _config(_recorder(calls), schema=Payload)

        with pytest.raises(EventValidationError) as exc_info:
            await execute_with_middleware(
                make_event(data={"note_id": "n1"}),
                config,
                compose_middleware([validation_middleware]),
            )

        assert calls == []
        assert exc_info.value.code == "EVT_VALIDATION_FAILED"
        assert exc_info.value.details["errors"][0]["loc"] == ("count",)

    @pytest.mark.asyncio
    async def test_without_schema_passes_through(self, make_event):
        """Should leave data untouched when no schema is set."""
        calls = []

        await execute_with_middleware(
            make_event(data={"anything": 1}),
            _config(_recorder(calls)),
            compose_middleware([validation_middleware]),
        )

        assert calls[0].data == {"anything": 1}

    @pytest.mark.asyncio
    async def test_coercion_is_per_handler(self, make_event):
        """Should not leak one handler's coerced data into another handler's event."""
        validated, raw = [], []
        pipeline = compose_middleware([validation_middleware])
        event = make_event(data={"note_id": "n1", "count": 1})

        await execute_with_middleware(event, _config(_recorder(validated), schema=Payload), pipeline)
        await execute_with_middleware(event, _config(_recorder(raw)), pipeline)

        assert isinstance(validated[0].data, Payload)
        assert raw[0].data == {"note_id": "n1", "count": 1}


class TestIdempotencyMiddleware:
    @pytest.mark.asyncio
    async def test_records_after_success(self, make_event, processing_log):
        """Should record the key once the handler succeeds."""
        calls = []
        config = _config(_recorder(calls), handler_id="h1", idempotency_key=lambda e: "key-1")
        event = make_event()

        await execute_with_middleware(event, config, compose_middleware([create_idempotency_middleware(processing_log)]))

        assert len(calls) == 1
        assert processing_log.recorded == [(event.metadata.event_id, "h1", "key-1")]

    @pytest.mark.asyncio
    async def test_skips_already_processed(self, make_event, processing_log):
        """Should skip the handler when the key is already recorded."""
        calls = []
        config = _config(_recorder(calls), handler_id="h1", idempotency_key=lambda e: "key-1")
        pipeline = compose_middleware([create_idempotency_middleware(processing_log)])

        await execute_with_middleware(make_event(), config, pipeline)
        await execute_with_middleware(make_event(), config, pipeline)

        assert len(calls) == 1
        assert len(processing_log.recorded) == 1

    @pytest.mark.asyncio
    async def test_does_not_record_failure(self, make_event, processing_log):
        """Should not record a key when the handler raises."""

        async def failing(event):
            raise RuntimeError("nope")

        config = _config(failing, handler_id="h1", idempotency_key=lambda e: "key-1")

        with pytest.raises(RuntimeError):
            await execute_with_middleware(
                make_event(), config, compose_middleware([create_idempotency_middleware(processing_log)]),
            )

        assert processing_log.recorded == []

    @pytest.mark.asyncio
    async def test_without_key_function_always_runs(self, make_event, processing_log):
        """Should run every time when no idempotency_key is configured."""
        calls = []
        pipeline = compose_middleware([create_idempotency_middleware(processing_log)])

        await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)
        await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)

        assert len(calls) == 2
        assert processing_log.recorded == []


class TestTimeoutMiddleware:
    @pytest.mark.asyncio
    async def test_raises_after_timeout_without_cancelling(self, make_event):
        """Should raise HandlerTimeoutError while the handler keeps running."""
        finished = asyncio.Event()

        async def slow(event):
            await asyncio.sleep(0.05)
            finished.set()

        config = _config(slow, timeout=0.01)
        pipeline = compose_middleware([create_timeout_middleware(lambda: 30.0)])

        with pytest.raises(HandlerTimeoutError, match="Handler timeout after 0.01s"):
            await execute_with_middleware(make_event(), config, pipeline)

        await asyncio.wait_for(finished.wait(), 1.0)

    @pytest.mark.asyncio
    async def test_uses_default_timeout(self, make_event):
        """Should fall back to the default timeout when options.timeout is unset."""

        async def slow(event):
            await asyncio.sleep(0.05)

        pipeline = compose_middleware([create_timeout_middleware(lambda: 0.01)])

        with pytest.raises(HandlerTimeoutError):
            await execute_with_middleware(make_event(), _config(slow), pipeline)

    @pytest.mark.asyncio
    async def test_passes_through_fast_handler(self, make_event):
        """Should return normally when the handler finishes in time."""
        calls = []
        pipeline = compose_middleware([create_timeout_middleware(lambda: 1.0)])

        await execute_with_middleware(make_event(), _config(_recorder(calls)), pipeline)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_handler_error_is_not_a_timeout(self, make_event):
        """Should surface the handler's own error unchanged."""

        async def failing(event):
            raise ValueError("bad input")

        pipeline = compose_middleware([create_timeout_middleware(lambda: 1.0)])

        with pytest.raises(ValueError, match="bad input"):
            await execute_with_middleware(make_event(), _config(failing), pipeline)


class TestCircuitBreakerMiddleware:
    @pytest.mark.asyncio
    async def test_opens_and_rejects(self, make_event):
        """Should stop invoking the handler once its breaker opens."""
        calls = []

        async def failing(event):
            calls.append(1)
            raise RuntimeError("down")

        breakers = CircuitBreakerRegistry(lambda: CircuitBreakerConfig(failure_threshold=2))
        pipeline = compose_middleware([create_circuit_breaker_middleware(breakers)])
        config = _config(failing, module="search", handler_id="indexer")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await execute_with_middleware(make_event(), config, pipeline)

        with pytest.raises(CircuitOpenError):
            await execute_with_middleware(make_event(), config, pipeline)

        assert len(calls) == 2
        assert "search-indexer" in breakers.snapshot()


class TestLoggingAndErrorHandling:
    @pytest.mark.asyncio
    async def test_error_handling_logs_and_rethrows(self, make_event, mock_logger):
        """Should log the failure with its payload and re-raise the original error."""
        error = RuntimeError("handler failed")

        async def failing(event):
            raise error

        with patch("modules.backend.events.middleware.logger", mock_logger):
            with pytest.raises(RuntimeError) as exc_info:
                await execute_with_middleware(
                    make_event(data={"note_id": "n1"}),
                    _config(failing),
                    compose_middleware([error_handling_middleware]),
                )

        assert exc_info.value is error
        extra = mock_logger.error.call_args[1]["extra"]
        assert extra["error_type"] == "RuntimeError"
        assert extra["payload"] == {"note_id": "n1"}
        assert "Traceback" in extra["stack"]

    @pytest.mark.asyncio
    async def test_logging_middleware_reports_completion(self, make_event, mock_logger):
        """Should log completion with a duration."""
        with patch("modules.backend.events.middleware.logger", mock_logger):
            await execute_with_middleware(
                make_event(), _config(_recorder([])), compose_middleware([logging_middleware]),
            )

        mock_logger.info.assert_called_once()
        assert "duration_ms" in mock_logger.info.call_args[1]["extra"]

    @pytest.mark.asyncio
    async def test_logging_middleware_reports_failure(self, make_event, mock_logger):
        """Should log a warning and re-raise when the handler fails."""

        async def failing(event):
            raise KeyError("missing")

        with patch("modules.backend.events.middleware.logger", mock_logger):
            with pytest.raises(KeyError):
                await execute_with_middleware(
                    make_event(), _config(failing), compose_middleware([logging_middleware]),
                )

        mock_logger.warning.assert_called_once()

    @pytest.mark.asyncio
    async def test_logging_middleware_binds_event_context(self, make_event):
        """Should bind the event fields for records logged inside the handler only."""
        structlog.contextvars.clear_contextvars()
        seen = []

        async def handler(event):
            seen.append(structlog.contextvars.get_contextvars())

        event = make_event()
        await execute_with_middleware(
            event, _config(handler, handler_id="indexer"), compose_middleware([logging_middleware]),
        )

        assert seen == [{
            "source": "events",
            "event_id": event.metadata.event_id,
            "event_name": event.metadata.event_name,
            "correlation_id": event.metadata.correlation_id,
            "handler": "indexer",
        }]
        assert structlog.contextvars.get_contextvars() == {}


class TestDefaultPipeline:
    @pytest.mark.asyncio
    async def test_full_pipeline_runs_handler_once(self, make_event, processing_log):
        """Should validate, run and record an idempotent handler exactly once."""
        calls = []
        breakers = CircuitBreakerRegistry(lambda: CircuitBreakerConfig())
        pipeline = create_default_pipeline(processing_log, breakers, lambda: 1.0)
        config = _config(
            _recorder(calls),
            handler_id="counter",
            schema=Payload,
            idempotency_key=lambda e: e.metadata.event_id,
        )
        event = make_event(data={"note_id": "n1", "count": 2})

        await execute_with_middleware(event, config, pipeline)
        await execute_with_middleware(event, config, pipeline)

        assert len(calls) == 1
        assert calls[0].data.count == 2
        assert breakers.get_state("test-counter").failure_count == 0

    @pytest.mark.asyncio
    async def test_validation_failure_does_not_trip_breaker(self, make_event, processing_log):
        """Should reject invalid data before the breaker sees a call."""
        breakers = CircuitBreakerRegistry(lambda: CircuitBreakerConfig(failure_threshold=1))
        pipeline = create_default_pipeline(processing_log, breakers, lambda: 1.0)
        config = _config(_recorder([]), handler_id="counter", schema=Payload)

        with pytest.raises(EventValidationError):
            await execute_with_middleware(make_event(data={}), config, pipeline)

        assert breakers.snapshot() == {}
