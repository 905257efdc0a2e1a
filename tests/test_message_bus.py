import asyncio

import pytest

from bus.message_bus import Envelope, MessageBus
from infra.errors import SurrogateCommunicationError


def test_request_returns_handler_response() -> None:
    async def scenario():
        bus = MessageBus()
        bus.register("echo", lambda envelope: {"success": True, "echo": envelope.payload["value"]})
        response = await bus.request("echo", Envelope("ping", {"value": 7}))
        await bus.close()
        return response

    assert asyncio.run(scenario()) == {"success": True, "echo": 7}


def test_async_handlers_are_awaited() -> None:
    async def handler(envelope: Envelope) -> dict:
        await asyncio.sleep(0)
        return {"success": True, "type": envelope.type}

    async def scenario():
        bus = MessageBus()
        bus.register("worker", handler)
        return await bus.request("worker", Envelope("job"))

    assert asyncio.run(scenario()) == {"success": True, "type": "job"}


def test_handler_exception_becomes_error_response() -> None:
    def handler(envelope: Envelope) -> dict:
        raise RuntimeError("boom")

    async def scenario():
        bus = MessageBus()
        bus.register("broken", handler)
        return await bus.request("broken", Envelope("job"))

    assert asyncio.run(scenario()) == {"success": False, "error": "boom"}


def test_request_times_out_when_context_is_unresponsive() -> None:
    async def handler(envelope: Envelope) -> dict:
        await asyncio.sleep(1.0)
        return {"success": True}

    async def scenario():
        bus = MessageBus(request_timeout_s=0.05)
        bus.register("slow", handler)
        with pytest.raises(SurrogateCommunicationError, match="no reply"):
            await bus.request("slow", Envelope("job"))
        await bus.close()

    asyncio.run(scenario())


def test_request_to_missing_endpoint_raises() -> None:
    async def scenario():
        with pytest.raises(SurrogateCommunicationError):
            await MessageBus().request("nobody", Envelope("job"))

    asyncio.run(scenario())


def test_notify_is_best_effort() -> None:
    received: list[str] = []

    async def scenario():
        bus = MessageBus()
        assert bus.notify("nobody", Envelope("hello")) is False
        bus.register("sink", lambda envelope: received.append(envelope.type))
        assert bus.notify("sink", Envelope("first")) is True
        await bus.request("sink", Envelope("second"))

    asyncio.run(scenario())
    assert received == ["first", "second"]


def test_notify_reports_full_inbox() -> None:
    async def scenario():
        bus = MessageBus(inbox_size=1)
        bus.register("sink", lambda envelope: None)
        first = bus.notify("sink", Envelope("one"))
        second = bus.notify("sink", Envelope("two"))
        await bus.close()
        return first, second

    assert asyncio.run(scenario()) == (True, False)


def test_register_twice_and_close() -> None:
    async def scenario():
        bus = MessageBus()
        bus.register("sink", lambda envelope: None)
        with pytest.raises(ValueError):
            bus.register("sink", lambda envelope: None)
        await bus.close()
        return bus.is_registered("sink"), bus.notify("sink", Envelope("late"))

    assert asyncio.run(scenario()) == (False, False)


def test_envelope_from_dict_validates_shape() -> None:
    assert Envelope.from_dict({"type": "stop"}) == Envelope("stop")
    assert Envelope.from_dict({"type": "play", "payload": {"text": "hi"}}).payload == {"text": "hi"}
    with pytest.raises(ValueError):
        Envelope.from_dict({"payload": {}})
    with pytest.raises(ValueError):
        Envelope.from_dict({"type": "play", "payload": [1]})


def test_endpoint_can_be_restarted_after_unregister() -> None:
    async def scenario():
        bus = MessageBus()
        bus.register("surrogate", lambda envelope: {"generation": 1})
        await bus.unregister("surrogate")
        assert bus.notify("surrogate", Envelope("stopAudio")) is False
        bus.register("surrogate", lambda envelope: {"generation": 2})
        return await bus.request("surrogate", Envelope("getAudioStatus"))

    assert asyncio.run(scenario()) == {"generation": 2}
