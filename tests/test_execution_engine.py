"""Tests for execution tracking, event ordering and cancellation."""

import asyncio

import pytest

from ble_mcp_bridge.exception import McpError
from ble_mcp_bridge.executions import Cancellable, ExecutionEngine
from ble_mcp_bridge.tools import ToolRegistry

from .conftest import RecordingConnection, settle


async def echo(input_data, context, on_progress):
    on_progress({"percent": 100})
    return {"echoed": input_data}


def sync_double(input_data, context, on_progress):
    return input_data * 2


async def boom(input_data, context, on_progress):
    raise RuntimeError("boom")


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
async def engine(gate):
    async def blocked(input_data, context, on_progress):
        on_progress({"step": 1})
        await gate.wait()
        return "done"

    cancelled = {"called": 0}
    pending = {}

    async def cancellable(input_data, context, on_progress):
        future = asyncio.get_running_loop().create_future()
        pending["future"] = future
        pending["progress"] = on_progress

        def cancel():
            cancelled["called"] += 1

        return Cancellable(cancel=cancel, result=future)

    def bad_cancel_tool(input_data, context, on_progress):
        def cancel():
            raise RuntimeError("cannot stop")

        return Cancellable(cancel=cancel, result=asyncio.Event().wait())

    registry = ToolRegistry()
    registry.register("echo", {}, echo)
    registry.register("double", {}, sync_double)
    registry.register("boom", {}, boom)
    registry.register("blocked", {}, blocked)
    registry.register("cancellable", {}, cancellable)
    registry.register("bad_cancel", {}, bad_cancel_tool)
    engine = ExecutionEngine(registry)
    engine.cancelled = cancelled
    engine.pending = pending
    yield engine
    await engine.shutdown()


async def test_echo_event_sequence(engine, connection):
    """started, progress{percent:100}, completed{echoed:...} in that order."""
    record = engine.execute("echo", {"x": 1}, {}, connection, "r1")
    await settle()

    started = connection.sent[0]
    assert started.type == "mcp.tool.execute.started"
    assert started.id == "r1"
    assert started.payload == {"execId": record.exec_id, "toolId": "echo"}

    assert connection.events() == ["progress", "completed"]
    progress, completed = connection.sent[1], connection.sent[2]
    assert progress.payload["data"] == {"percent": 100}
    assert progress.id is None
    assert completed.payload["data"] == {"echoed": {"x": 1}}
    assert completed.payload["execId"] == record.exec_id
    assert completed.payload["toolId"] == "echo"
    assert completed.payload["timestamp"].endswith("Z")


async def test_status_reflects_completed_result(engine, connection):
    record = engine.execute("echo", "hi", {}, connection)
    await settle()
    assert engine.status(record.exec_id) == {
        "execId": record.exec_id,
        "toolId": "echo",
        "status": "completed",
        "result": {"echoed": "hi"},
    }


async def test_sync_handler_completes(engine, connection):
    record = engine.execute("double", 21, {}, connection)
    await settle()
    assert record.status == "completed"
    assert connection.last().payload["data"] == 42


async def test_handler_error_becomes_failed_event(engine, connection):
    """A raising handler produces one failed event, not an error reply."""
    record = engine.execute("boom", None, {}, connection)
    await settle()
    assert connection.events() == ["failed"]
    assert connection.last().payload["data"] == {"error": "boom"}
    assert record.status == "failed"
    assert "mcp/error" not in connection.types()


async def test_unknown_tool_sends_nothing(engine, connection):
    with pytest.raises(McpError) as excinfo:
        engine.execute("nope", None, {}, connection)
    assert excinfo.value.code == "tool_not_found"
    assert connection.sent == []
    assert len(engine) == 0


async def test_status_of_running_execution(engine, connection, gate):
    """Status does not wait for completion."""
    record = engine.execute("blocked", None, {}, connection)
    await settle()
    assert engine.status(record.exec_id)["status"] == "running"
    gate.set()
    await settle()
    assert engine.status(record.exec_id)["status"] == "completed"


async def test_status_unknown_execution(engine):
    with pytest.raises(McpError, match="execution_not_found"):
        engine.status("missing")


async def test_cancel_without_capability_is_rejected(engine, connection, gate):
    """A running execution with no cancel capability stays running."""
    record = engine.execute("blocked", None, {}, connection)
    await settle()
    with pytest.raises(McpError) as excinfo:
        await engine.cancel(record.exec_id, connection, "c1")
    assert excinfo.value.code == "not_cancellable"
    assert record.status == "running"
    gate.set()
    await settle()


async def test_cancel_acks_then_broadcasts(engine, connection):
    """Cancel acks the requester, emits cancelled and ignores late output."""
    record = engine.execute("cancellable", None, {}, connection)
    await settle()
    assert record.cancellable

    await engine.cancel(record.exec_id, connection, "c1")
    assert engine.cancelled["called"] == 1
    assert record.status == "cancelled"

    ack, event = connection.sent[-2], connection.sent[-1]
    assert ack.type == "mcp.exec.cancel.ack"
    assert ack.id == "c1"
    assert ack.payload == {"execId": record.exec_id, "status": "cancelled"}
    assert event.payload["event"] == "cancelled"
    assert event.payload["data"] is None

    # Late progress and result are dropped
    engine.pending["progress"]({"late": True})
    engine.pending["future"].set_result("late")
    await settle()
    assert connection.events() == ["cancelled"]
    assert record.status == "cancelled"
    assert record.result is None


async def test_cancel_after_completion_is_rejected(engine, connection):
    record = engine.execute("cancellable", None, {}, connection)
    await settle()
    engine.pending["future"].set_result("finished")
    await settle()
    assert record.status == "completed"
    with pytest.raises(McpError, match="not_cancellable"):
        await engine.cancel(record.exec_id, connection)
    assert connection.events() == ["completed"]


async def test_failing_cancel_leaves_execution_running(engine, connection):
    record = engine.execute("bad_cancel", None, {}, connection)
    await settle()
    with pytest.raises(McpError) as excinfo:
        await engine.cancel(record.exec_id, connection)
    assert excinfo.value.code == "cancel_failed"
    assert record.status == "running"
    await engine.shutdown()


async def test_subscribers_receive_events(engine, connection, gate):
    """Late subscribers see subsequent events; unsubscribed ones do not."""
    watcher = RecordingConnection("watcher")
    leaver = RecordingConnection("leaver")
    record = engine.execute("blocked", None, {}, connection)
    engine.subscribe(record.exec_id, watcher)
    engine.subscribe(record.exec_id, watcher)
    engine.subscribe(record.exec_id, leaver)
    engine.unsubscribe(record.exec_id, leaver)
    await settle()
    gate.set()
    await settle()

    assert watcher.events() == ["progress", "completed"]
    assert leaver.sent == []
    assert connection.events() == ["progress", "completed"]


async def test_subscribe_unknown_execution(engine, connection):
    with pytest.raises(McpError, match="execution_not_found"):
        engine.subscribe("missing", connection)


async def test_unsubscribe_unknown_execution_is_noop(engine, connection):
    engine.unsubscribe("missing", connection)


async def test_failed_delivery_does_not_stop_broadcast(engine, connection):
    broken = RecordingConnection("broken")
    broken.fail_sends = True
    record = engine.execute("echo", None, {}, connection)
    engine.subscribe(record.exec_id, broken)
    await settle()
    assert connection.events() == ["progress", "completed"]
    assert broken in engine.fanout.subscribers(record.exec_id)


async def test_removed_connection_still_reaches_terminal(engine, connection, gate):
    """Disconnecting subscribers does not strand the execution."""
    record = engine.execute("blocked", None, {}, connection)
    await settle()
    engine.remove_connection(connection)
    assert connection not in engine.fanout.subscribers(record.exec_id)
    gate.set()
    await settle()
    assert record.status == "completed"
    assert connection.events() == ["progress"]


async def test_shutdown_cancels_running_handlers(engine, connection):
    record = engine.execute("blocked", None, {}, connection)
    await settle()
    await engine.shutdown()
    assert record.status == "running"
    assert connection.events() == ["progress"]


def _single_tool_engine(handler):
    registry = ToolRegistry()
    registry.register("tool", {}, handler)
    return ExecutionEngine(registry)


async def test_progress_after_completion_is_suppressed(connection):
    """A handler calling on_progress after it resolved emits nothing more."""
    kept = {}

    async def handler(input_data, context, on_progress):
        kept["progress"] = on_progress
        return "ok"

    engine = _single_tool_engine(handler)
    record = engine.execute("tool", None, {}, connection)
    await settle()
    kept["progress"]({"late": True})
    await settle()
    assert record.status == "completed"
    assert connection.events() == ["completed"]


async def test_progress_after_failure_is_suppressed(connection):
    kept = {}

    async def handler(input_data, context, on_progress):
        kept["progress"] = on_progress
        raise ValueError("bad input")

    engine = _single_tool_engine(handler)
    record = engine.execute("tool", None, {}, connection)
    await settle()
    kept["progress"]({"late": True})
    await settle()
    assert record.status == "failed"
    assert connection.events() == ["failed"]
    assert connection.last().payload["data"] == {"error": "bad input"}


async def test_result_settling_during_async_cancel_is_discarded(connection):
    """An outcome reached while an async cancel runs never becomes terminal."""
    async def handler(input_data, context, on_progress):
        future = asyncio.get_running_loop().create_future()

        async def cancel():
            future.set_result("finished anyway")
            await settle()

        return Cancellable(cancel=cancel, result=future)

    engine = _single_tool_engine(handler)
    record = engine.execute("tool", None, {}, connection)
    await settle()

    await engine.cancel(record.exec_id, connection, "c1")
    await settle()
    assert record.status == "cancelled"
    assert record.result is None
    assert connection.events() == ["cancelled"]
    assert connection.sent[-2].type == "mcp.exec.cancel.ack"


async def test_failed_async_cancel_applies_outcome_reached_meanwhile(connection):
    """When cancel fails, a result that arrived during it completes the run."""

    async def handler(input_data, context, on_progress):
        future = asyncio.get_running_loop().create_future()

        async def cancel():
            future.set_result("finished anyway")
            await settle()
            raise RuntimeError("cannot stop")

        return Cancellable(cancel=cancel, result=future)

    engine = _single_tool_engine(handler)
    record = engine.execute("tool", None, {}, connection)
    await settle()

    with pytest.raises(McpError) as excinfo:
        await engine.cancel(record.exec_id, connection)
    assert excinfo.value.code == "cancel_failed"
    assert record.status == "completed"
    assert record.result == "finished anyway"
    assert connection.events() == ["completed"]


async def test_cancel_while_cancelling_is_rejected(connection):
    release = asyncio.Event()

    async def handler(input_data, context, on_progress):
        async def cancel():
            await release.wait()

        return Cancellable(cancel=cancel, result=asyncio.Event().wait())

    engine = _single_tool_engine(handler)
    record = engine.execute("tool", None, {}, connection)
    await settle()

    first = asyncio.create_task(engine.cancel(record.exec_id))
    await settle()
    with pytest.raises(McpError, match="not_cancellable"):
        await engine.cancel(record.exec_id)
    release.set()
    await first
    assert record.status == "cancelled"
    await engine.shutdown()


async def test_execute_for_closed_initiator_stores_nothing(engine, connection):
    connection.fail_sends = True
    with pytest.raises(ConnectionError):
        engine.execute("echo", None, {}, connection)
    await settle()
    assert len(engine) == 0
    assert connection.sent == []
