import asyncio
import threading

import pytest

from kiosk_avatar.bridge import HostBridge
from kiosk_avatar.errors import BridgeClosedError, BridgeTimeoutError


def test_call_runs_off_the_event_loop_thread():
    async def scenario():
        bridge = HostBridge("t")
        try:
            name = await bridge.call(lambda: threading.current_thread().name)
            assert name.startswith("t")
            assert name != threading.main_thread().name
            assert bridge.calls == 1
            assert not bridge.busy
        finally:
            bridge.close()

    asyncio.run(scenario())


def test_timed_out_call_stays_pending_until_it_returns(gate):
    async def scenario():
        bridge = HostBridge("t")
        try:
            with pytest.raises(BridgeTimeoutError):
                await bridge.call(gate.wait, 5.0, timeout=0.02)
            assert bridge.busy
            assert bridge.timeouts == 1
            assert not await bridge.drain(0.01)
            gate.set()
            assert await bridge.drain(1.0)
            assert not bridge.busy
        finally:
            bridge.close()

    asyncio.run(scenario())


def test_errors_propagate_unchanged():
    def boom():
        raise ValueError("bad")

    async def scenario():
        bridge = HostBridge("t")
        try:
            with pytest.raises(ValueError):
                await bridge.call(boom)
        finally:
            bridge.close()

    asyncio.run(scenario())


def test_closed_bridge_refuses_calls():
    async def scenario():
        bridge = HostBridge("t")
        bridge.close()
        with pytest.raises(BridgeClosedError):
            await bridge.call(lambda: None)

    asyncio.run(scenario())


def test_deferred_cleanup_runs_after_stuck_call(gate):
    order = []

    def stuck():
        gate.wait(5.0)
        order.append("call")

    async def scenario():
        bridge = HostBridge("t")
        with pytest.raises(BridgeTimeoutError):
            await bridge.call(stuck, timeout=0.02)
        assert not await bridge.run_when_idle(lambda: order.append("cleanup"), 0.02)
        bridge.close()
        assert order == []
        gate.set()
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert order == ["call", "cleanup"]


def test_drain_by_tag_ignores_other_resources(gate):
    async def scenario():
        bridge = HostBridge("t")
        try:
            with pytest.raises(BridgeTimeoutError):
                await bridge.call(gate.wait, 5.0, timeout=0.02, tag="inference")
            assert await bridge.drain(0.01, tag="camera")
            assert not await bridge.drain(0.01, tag="inference")
            ran = []
            assert await bridge.run_when_idle(lambda: ran.append(True), 0.01, tag="camera")
            assert ran == [True]
        finally:
            gate.set()
            bridge.close()

    asyncio.run(scenario())


def test_late_result_goes_to_discard(gate):
    discarded = []

    def slow_open():
        gate.wait(5.0)
        return "handle"

    async def scenario():
        bridge = HostBridge("t")
        try:
            with pytest.raises(BridgeTimeoutError):
                await bridge.call(slow_open, timeout=0.02, discard=discarded.append)
            assert discarded == []
            gate.set()
            assert await bridge.drain(1.0)
            await asyncio.sleep(0)
        finally:
            bridge.close()

    asyncio.run(scenario())
    assert discarded == ["handle"]


def test_cancelled_call_discards_its_result(gate):
    discarded = []

    def slow_open():
        gate.wait(5.0)
        return "session"

    async def scenario():
        bridge = HostBridge("t")
        try:
            waiter = asyncio.ensure_future(bridge.call(slow_open, discard=discarded.append))
            await asyncio.sleep(0.02)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            gate.set()
            assert await bridge.drain(1.0)
            await asyncio.sleep(0)
        finally:
            bridge.close()

    asyncio.run(scenario())
    assert discarded == ["session"]


def test_delivered_result_is_not_discarded():
    discarded = []

    async def scenario():
        bridge = HostBridge("t")
        try:
            assert await bridge.call(lambda: "handle", timeout=1.0, discard=discarded.append) == "handle"
        finally:
            bridge.close()

    asyncio.run(scenario())
    assert discarded == []


def test_deferring_on_a_closed_bridge_is_refused():
    bridge = HostBridge("t")
    bridge.close()
    with pytest.raises(BridgeClosedError):
        bridge.defer(lambda: None)
