"""Asynchronous tool execution, tracking and cancellation."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Optional, Set, Tuple

from .connection import Connection
from .const import TOOL_EVENT_TYPE, ExecutionEvent
from .envelope import RequestId, make_envelope, utc_timestamp
from .exception import McpError
from .subscribers import SubscriberFanout
from .tools import ToolRegistration, ToolRegistry

logger = logging.getLogger(__name__)

ExecutionStatus = Literal["running", "completed", "failed", "cancelled"]
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

EXECUTE_STARTED_TYPE = "mcp.tool.execute.started"
CANCEL_ACK_TYPE = "mcp.exec.cancel.ack"


@dataclass
class Cancellable:
    """Value a handler may resolve to in order to expose a cancel capability.

    ``result`` is either the final result or an awaitable producing it. While
    an awaitable result is pending the execution stays ``running`` and can be
    cancelled through ``cancel`` (sync or async).
    """

    cancel: Callable[[], Any]
    result: Any = None


@dataclass
class ExecutionRecord:
    """State of one tool invocation."""

    exec_id: str
    tool_id: str
    status: ExecutionStatus = "running"
    result: Any = None
    cancel: Optional[Callable[[], Any]] = field(default=None, repr=False)
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    cancelling: bool = False
    held_outcome: Optional[Tuple[ExecutionStatus, Any]] = field(
        default=None, repr=False
    )

    def is_terminal(self) -> bool:
        """Check if the execution has reached a final state."""
        return self.status in TERMINAL_STATUSES

    @property
    def cancellable(self) -> bool:
        """Whether ``cancel`` may currently be attempted."""
        return (
            self.cancel is not None
            and not self.cancelling
            and not self.is_terminal()
        )

    def _finish(self, status: ExecutionStatus) -> bool:
        if self.is_terminal():
            return False
        self.status = status
        self.completed_at = time.time()
        return True

    def mark_completed(self, result: Any) -> bool:
        """Mark execution as completed; ``False`` if already terminal."""
        if not self._finish("completed"):
            return False
        self.result = result
        return True

    def mark_failed(self, error: str) -> bool:
        """Mark execution as failed; ``False`` if already terminal."""
        if not self._finish("failed"):
            return False
        self.result = {"error": error}
        return True

    def mark_cancelled(self) -> bool:
        """Mark execution as cancelled; ``False`` if already terminal."""
        return self._finish("cancelled")

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time view sent in ``mcp.exec.status.result``."""
        return {
            "execId": self.exec_id,
            "toolId": self.tool_id,
            "status": self.status,
            "result": self.result,
        }


class ExecutionEngine:
    """Owns the execution table and drives handlers to a terminal state.

    All table mutations happen on the event loop without an intervening
    ``await``, so concurrent completions cannot interleave inside one.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        fanout: Optional[SubscriberFanout] = None,
    ) -> None:
        """Bind the engine to ``registry`` and a subscriber fan-out."""
        self.registry = registry
        self.fanout = fanout or SubscriberFanout()
        self._records: Dict[str, ExecutionRecord] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._counter = 0
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._records)

    def get(self, exec_id: str) -> Optional[ExecutionRecord]:
        """Return the record for ``exec_id`` or ``None``."""
        return self._records.get(exec_id)

    def _require(self, exec_id: str) -> ExecutionRecord:
        record = self._records.get(exec_id)
        if record is None:
            raise McpError("execution_not_found")
        return record

    def _generate_exec_id(self) -> str:
        """Random id, or counter/pid/time when no randomness source exists."""
        try:
            return str(uuid.uuid4())
        except NotImplementedError:
            self._counter += 1
            return f"{int(time.time() * 1000)}-{os.getpid()}-{self._counter}"

    # Operations

    def execute(
        self,
        tool_id: str,
        input_data: Any,
        context: Optional[Dict[str, Any]],
        initiator: Connection,
        request_id: RequestId = None,
    ) -> ExecutionRecord:
        """Start ``tool_id`` and acknowledge ``initiator`` before it runs.

        Must be called from the event loop. The handler is scheduled as a task
        and cannot emit anything before the ``started`` envelope is queued.
        """
        tool = self.registry.get(tool_id)
        if tool is None:
            raise McpError("tool_not_found")

        exec_id = self._generate_exec_id()
        # Nothing is stored if the initiator is already gone
        initiator.send(
            make_envelope(
                EXECUTE_STARTED_TYPE,
                {"execId": exec_id, "toolId": tool_id},
                request_id,
            )
        )
        record = ExecutionRecord(exec_id=exec_id, tool_id=tool_id)
        self._records[exec_id] = record
        self.fanout.create(exec_id, initiator)
        logger.info("Execution %s started for tool %s", exec_id, tool_id)

        task = asyncio.create_task(
            self._run(record, tool, input_data, context or {}),
            name=f"exec-{exec_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record

    def status(self, exec_id: str) -> Dict[str, Any]:
        """Snapshot of ``exec_id``; never waits for completion."""
        return self._require(exec_id).snapshot()

    def subscribe(self, exec_id: str, connection: Connection) -> None:
        """Add ``connection`` to the event stream of ``exec_id``."""
        self._require(exec_id)
        self.fanout.subscribe(exec_id, connection)

    def unsubscribe(self, exec_id: str, connection: Connection) -> None:
        """Remove ``connection`` from the event stream of ``exec_id``."""
        self.fanout.unsubscribe(exec_id, connection)

    async def cancel(
        self,
        exec_id: str,
        requester: Optional[Connection] = None,
        request_id: RequestId = None,
    ) -> ExecutionRecord:
        """Invoke the handler's cancel capability for ``exec_id``.

        Raises:
            McpError: ``execution_not_found``, ``not_cancellable`` or
                ``cancel_failed``. A failed cancel leaves the record running
                unless the handler settled while the cancel was in progress.
        """
        record = self._require(exec_id)
        if not record.cancellable:
            raise McpError("not_cancellable")

        # Outcomes that settle while cancel runs are held until it returns
        record.cancelling = True
        try:
            outcome = record.cancel()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Cancel of %s failed: %s", exec_id, exc)
            self._release_held_outcome(record)
            raise McpError("cancel_failed") from exc
        except asyncio.CancelledError:
            self._release_held_outcome(record)
            raise
        finally:
            record.cancelling = False

        if record.held_outcome is not None:
            logger.debug(
                "Discarding %s outcome of cancelled %s",
                record.held_outcome[0],
                exec_id,
            )
            record.held_outcome = None
        if not record.mark_cancelled():
            raise McpError("not_cancellable")

        logger.info("Execution %s cancelled", exec_id)
        if requester is not None:
            requester.send(
                make_envelope(
                    CANCEL_ACK_TYPE,
                    {"execId": exec_id, "status": "cancelled"},
                    request_id,
                )
            )
        self._emit(record, ExecutionEvent.CANCELLED)
        return record

    def remove_connection(self, connection: Connection) -> None:
        """Forget ``connection`` in every subscriber set."""
        self.fanout.remove_connection(connection)

    async def shutdown(self) -> None:
        """Cancel outstanding handler tasks (process is stopping)."""
        self._shutting_down = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Internals

    def _emit(
        self, record: ExecutionRecord, event: ExecutionEvent, data: Any = None
    ) -> None:
        self.fanout.broadcast(
            record.exec_id,
            make_envelope(
                TOOL_EVENT_TYPE,
                {
                    "event": event.value,
                    "execId": record.exec_id,
                    "toolId": record.tool_id,
                    "data": data,
                    "timestamp": utc_timestamp(),
                },
            ),
        )

    def _progress_callback(self, record: ExecutionRecord) -> Callable[..., None]:
        def on_progress(data: Any = None) -> None:
            if record.is_terminal():
                logger.debug(
                    "Suppressed progress for %s after %s",
                    record.exec_id,
                    record.status,
                )
                return
            self._emit(record, ExecutionEvent.PROGRESS, data)

        return on_progress

    async def _run(
        self,
        record: ExecutionRecord,
        tool: ToolRegistration,
        input_data: Any,
        context: Dict[str, Any],
    ) -> None:
        on_progress = self._progress_callback(record)
        try:
            outcome = tool.handler(input_data, context, on_progress)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if isinstance(outcome, Cancellable):
                record.cancel = outcome.cancel
                result = outcome.result
                if inspect.isawaitable(result):
                    result = await result
            else:
                result = outcome
        except asyncio.CancelledError:
            if record.is_terminal() or self._shutting_down:
                raise
            self._fail(record, "handler cancelled")
            return
        except Exception as exc:
            logger.debug(
                "Handler for %s raised", record.exec_id, exc_info=True
            )
            self._fail(record, str(exc) or exc.__class__.__name__)
            return

        self._complete(record, result)

    def _complete(self, record: ExecutionRecord, result: Any) -> None:
        if record.cancelling:
            record.held_outcome = ("completed", result)
            return
        if record.mark_completed(result):
            logger.info("Execution %s completed", record.exec_id)
            self._emit(record, ExecutionEvent.COMPLETED, record.result)
        else:
            logger.debug(
                "Ignoring late result for %s (%s)",
                record.exec_id,
                record.status,
            )

    def _fail(self, record: ExecutionRecord, message: str) -> None:
        if record.cancelling:
            record.held_outcome = ("failed", message)
            return
        if record.mark_failed(message):
            logger.warning(
                "Execution %s failed: %s", record.exec_id, message
            )
            self._emit(record, ExecutionEvent.FAILED, record.result)

    def _release_held_outcome(self, record: ExecutionRecord) -> None:
        """Apply an outcome held back by a cancel that did not succeed."""
        record.cancelling = False
        held, record.held_outcome = record.held_outcome, None
        if held is None:
            return
        status, value = held
        if status == "completed":
            self._complete(record, value)
        else:
            self._fail(record, value)
