"""
Process supervisor for managed build/run processes.

Starts, stops and restarts processes, streams their stdout/stderr through
the log classifier, records output and errors in the record store and
applies the recovery policy when a process fails. Each process gets its
own reader tasks; all results flow through one queue into a single
dispatcher task, which is the only place process records are mutated.
"""

import asyncio
import itertools
import logging
import os
import shlex
import signal
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .classifier import (
    ClassificationContext,
    ClassifiedError,
    ErrorCategory,
    LogLine,
    Severity,
    block_keeps_terminator,
    classify,
    classify_block,
    detect_framework,
    is_block_start,
)
from .config import Config, config
from .errors import PolicyViolation, SpawnFailure, UnknownProcess
from .events import ErrorEvent, EventEmitter, StateEvent
from .policy import RecoveryAction, RecoveryDecision, RecoveryPolicy
from .store import ProcessHistory, ProcessRecordStore

logger = logging.getLogger(__name__)

# asyncio StreamReader line limit for process output
STREAM_LIMIT = 1024 * 1024


class ProcessState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    GIVEN_UP = "given_up"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessState.STOPPED, ProcessState.GIVEN_UP)


TRANSITIONS = {
    ProcessState.STARTING: {ProcessState.RUNNING, ProcessState.STOPPED, ProcessState.GIVEN_UP},
    ProcessState.RUNNING: {ProcessState.CRASHED, ProcessState.STOPPED},
    ProcessState.CRASHED: {ProcessState.RESTARTING, ProcessState.GIVEN_UP, ProcessState.STOPPED},
    ProcessState.RESTARTING: {ProcessState.STARTING, ProcessState.STOPPED},
    ProcessState.STOPPED: set(),
    ProcessState.GIVEN_UP: set(),
}


@dataclass
class ManagedProcess:
    """A supervised process and its lifecycle state."""

    id: str
    command: str
    working_directory: Optional[str] = None
    environment: dict[str, str] = field(default_factory=dict)
    framework: Optional[str] = None
    state: ProcessState = ProcessState.STARTING
    state_reason: Optional[str] = None
    pid: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    last_exit_code: Optional[int] = None
    restart_count: int = 0

    def snapshot(self) -> "ManagedProcess":
        return replace(self, environment=dict(self.environment))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "command": self.command,
            "working_directory": self.working_directory,
            "environment": dict(self.environment),
            "framework": self.framework,
            "state": self.state.value,
            "state_reason": self.state_reason,
            "pid": self.pid,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_exit_code": self.last_exit_code,
            "restart_count": self.restart_count,
        }


@dataclass
class _ProcessHandle:
    """Supervisor-private state of one managed process. Never leaves this module."""

    record: ManagedProcess
    proc: Optional[asyncio.subprocess.Process] = None
    generation: int = 0
    tasks: list = field(default_factory=list)
    restart_task: Optional[asyncio.Task] = None
    stop_requested: bool = False
    env_overrides: dict[str, str] = field(default_factory=dict)
    block: list[LogLine] = field(default_factory=list)
    block_keeps_terminator: bool = False
    block_id: int = 0
    block_timer: Optional[asyncio.TimerHandle] = None
    run_had_critical: bool = False
    launching: bool = False
    # Restart decided while the process was still running, applied on its exit
    pending_decision: Optional[RecoveryDecision] = None


@dataclass
class _OutputLine:
    process_id: str
    generation: int
    line: LogLine


@dataclass
class _Exited:
    process_id: str
    generation: int
    exit_code: int


@dataclass
class _BlockIdle:
    process_id: str
    generation: int
    block_id: int


class ProcessSupervisor:
    """Manages the lifecycle of supervised processes."""

    def __init__(
        self,
        settings: Config = None,
        store: ProcessRecordStore = None,
        policy: RecoveryPolicy = None,
        emitter: EventEmitter = None,
    ):
        self.settings = settings or config
        self.store = store or ProcessRecordStore(
            max_entries=self.settings.max_history_entries_per_process,
            max_bytes=self.settings.max_history_bytes_per_process,
        )
        self.policy = policy or RecoveryPolicy.from_config(self.settings)
        self.events = emitter or EventEmitter()
        self._handles: dict[str, _ProcessHandle] = {}
        self._generations = itertools.count(1)
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    # Lifecycle of the supervisor itself

    async def startup(self):
        """Start the dispatcher and resume processes a previous instance left running."""
        self._ensure_dispatcher()
        if not self.settings.resume_on_startup:
            return

        for data in self.store.load_records():
            try:
                state = ProcessState(data.get("state"))
            except ValueError:
                continue
            process_id = data.get("id")
            if state.is_terminal or not process_id or process_id in self._handles:
                continue
            logger.info(f"Resuming process {process_id} left {state.value} by a previous instance")
            await self.start_managed_process(
                data["command"],
                working_directory=data.get("working_directory"),
                environment=data.get("environment"),
                process_id=process_id,
                framework=data.get("framework"),
            )

    async def shutdown(self):
        """Stop all active processes and the dispatcher."""
        active = [pid for pid, handle in self._handles.items() if not handle.record.state.is_terminal]
        results = await asyncio.gather(
            *(self.stop_managed_process(pid) for pid in active), return_exceptions=True
        )
        for pid, result in zip(active, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to stop process {pid} during shutdown: {result}")

        pending = list(self._background)
        for handle in self._handles.values():
            self._cancel_block_timer(handle)
            pending.extend(handle.tasks)
        if self._dispatcher:
            pending.append(self._dispatcher)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._dispatcher = None
        self._queue = None
        logger.info("Process supervisor stopped")

    def _ensure_dispatcher(self):
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # Inbound interface

    async def start_managed_process(
        self,
        command: str,
        working_directory: Optional[str] = None,
        environment: Optional[dict[str, str]] = None,
        process_id: Optional[str] = None,
        framework: Optional[str] = None,
    ) -> str:
        """Start a command under supervision. Returns the process id.

        Starting an id whose process is still active is a no-op.
        """
        self._ensure_dispatcher()
        process_id = process_id or uuid.uuid4().hex[:8]

        existing = self._handles.get(process_id)
        if existing and not existing.record.state.is_terminal:
            logger.info(f"Process {process_id} is already {existing.record.state.value}")
            return process_id

        if not framework:
            framework = self.settings.framework_hints.get(process_id) or detect_framework(command)

        record = ManagedProcess(
            id=process_id,
            command=command,
            working_directory=working_directory,
            environment=dict(environment or {}),
            framework=framework,
            state_reason="start requested",
        )
        handle = _ProcessHandle(record=record)
        self._handles[process_id] = handle
        logger.info(f"Starting process {process_id}: {command}")
        self._publish(handle, None)

        await self._launch(handle)
        return process_id

    async def stop_managed_process(self, process_id: str) -> bool:
        """Stop a process. Returns False if it was already stopped or given up."""
        handle = self._get_handle(process_id)
        record = handle.record

        if record.state.is_terminal:
            logger.info(f"Process {process_id} is already {record.state.value}, nothing to stop")
            return False

        handle.stop_requested = True

        task = handle.restart_task
        if task and not task.done():
            if handle.launching:
                # Cancelling mid-spawn could orphan the child; _launch terminates it instead
                await task
            else:
                logger.info(f"Cancelling pending restart of {process_id}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if handle.proc is not None and handle.proc.returncode is None:
            record.last_exit_code = await self._terminate(handle.proc, process_id)
            record.pid = None

        if not record.state.is_terminal:
            self._transition(handle, ProcessState.STOPPED, "stop requested")
        return True

    def get_status(self, process_id: str) -> ManagedProcess:
        """Snapshot of a managed process."""
        return self._get_handle(process_id).record.snapshot()

    def list_processes(self) -> list[ManagedProcess]:
        return [handle.record.snapshot() for handle in self._handles.values()]

    def is_active(self, process_id: str) -> bool:
        handle = self._handles.get(process_id)
        return handle is not None and not handle.record.state.is_terminal

    def history(self, process_id: str) -> ProcessHistory:
        return self.store.history(process_id)

    def clear_history(self, process_id: str):
        self.store.clear(process_id)

    def _get_handle(self, process_id: str) -> _ProcessHandle:
        handle = self._handles.get(process_id)
        if handle is None:
            raise UnknownProcess(process_id)
        return handle

    # State changes

    def _transition(self, handle: _ProcessHandle, state: ProcessState, reason: str = None):
        record = handle.record
        previous = record.state
        if state not in TRANSITIONS[previous]:
            raise PolicyViolation(f"{record.id}: cannot move from {previous.value} to {state.value}")

        record.state = state
        record.state_reason = reason

        message = f"Process {record.id}: {previous.value} -> {state.value}" + (f" ({reason})" if reason else "")
        if state == ProcessState.GIVEN_UP:
            logger.error(message)
        elif state == ProcessState.CRASHED:
            logger.warning(message)
        else:
            logger.info(message)

        self._publish(handle, previous)

    def _publish(self, handle: _ProcessHandle, previous: Optional[ProcessState]):
        record = handle.record
        self.store.save_record(record)

        if record.state == ProcessState.GIVEN_UP:
            severity = Severity.CRITICAL
        elif record.state == ProcessState.CRASHED:
            severity = Severity.WARNING
        else:
            severity = Severity.INFO

        self.events.emit(
            StateEvent(
                process_id=record.id,
                previous=previous.value if previous else None,
                state=record.state.value,
                reason=record.state_reason,
                severity=severity,
            )
        )

    def _record_error(self, handle: _ProcessHandle, error: ClassifiedError):
        self.store.append_error(handle.record.id, error)
        if error.severity == Severity.CRITICAL:
            handle.run_had_critical = True
        self.events.emit(ErrorEvent(process_id=handle.record.id, error=error))

    # Spawning and output capture

    async def _spawn(self, command: str, cwd: Optional[str], env: dict) -> asyncio.subprocess.Process:
        kwargs = dict(
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or None,
            env=env,
            start_new_session=True,  # Own process group
            limit=STREAM_LIMIT,
        )
        if command.startswith("cd "):
            # Handle "cd /path && command" pattern
            return await asyncio.create_subprocess_shell(command, **kwargs)

        args = shlex.split(command)
        if not args:
            raise ValueError("empty command")
        return await asyncio.create_subprocess_exec(*args, **kwargs)

    async def _launch(self, handle: _ProcessHandle):
        record = handle.record
        handle.generation = next(self._generations)
        handle.run_had_critical = False
        handle.pending_decision = None
        self._cancel_block_timer(handle)
        handle.block = []
        generation = handle.generation

        env = os.environ.copy()
        env.update(record.environment)
        env.update(handle.env_overrides)

        handle.launching = True
        try:
            try:
                proc = await asyncio.wait_for(
                    self._spawn(record.command, record.working_directory, env),
                    timeout=self.settings.start_timeout,
                )
            except asyncio.TimeoutError:
                failure = SpawnFailure(record.id, f"start timed out after {self.settings.start_timeout:g}s")
            except (OSError, ValueError) as e:
                failure = SpawnFailure(record.id, str(e))
            else:
                failure = None

            if failure is not None:
                if handle.stop_requested or record.state != ProcessState.STARTING:
                    logger.info(f"Process {record.id} was stopped while starting: {failure.message}")
                else:
                    self._spawn_failed(handle, failure)
                return

            if handle.stop_requested or record.state != ProcessState.STARTING:
                # stop() arrived while spawning
                logger.info(f"Process {record.id} was stopped while starting, terminating pid {proc.pid}")
                record.last_exit_code = await self._terminate(proc, record.id)
                return
        finally:
            handle.launching = False

        handle.proc = proc
        record.pid = proc.pid
        record.started_at = datetime.now()
        record.last_exit_code = None

        readers = [
            asyncio.create_task(self._read_stream(record.id, generation, proc.stdout, "stdout")),
            asyncio.create_task(self._read_stream(record.id, generation, proc.stderr, "stderr")),
        ]
        watcher = asyncio.create_task(self._watch_exit(record.id, generation, proc, readers))
        handle.tasks = [*readers, watcher]

        self._transition(handle, ProcessState.RUNNING, f"pid {proc.pid}")

    def _spawn_failed(self, handle: _ProcessHandle, failure: SpawnFailure):
        record = handle.record
        logger.error(f"Failed to start process {record.id}: {failure.message}")

        line = LogLine(process_id=record.id, stream="stderr", timestamp=datetime.now(), text=failure.message)
        self.store.append_line(record.id, line)

        errors = classify(line, self._context(record))
        if not any(e.severity == Severity.CRITICAL for e in errors):
            errors.append(
                ClassifiedError(
                    process_id=record.id,
                    timestamp=line.timestamp,
                    category=ErrorCategory.UNKNOWN,
                    severity=Severity.CRITICAL,
                    raw_line=failure.message,
                    matched_pattern="spawn-failure",
                )
            )
        for error in errors:
            self._record_error(handle, error)

        self._transition(handle, ProcessState.GIVEN_UP, f"spawn failure: {failure.message}")

    async def _read_stream(self, process_id: str, generation: int, stream, name: str):
        """Forward each line of a process stream to the dispatcher."""
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                logger.warning(f"Dropped oversized output line from {process_id}: {e}")
                continue
            if not raw:
                break

            text = raw.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue

            line = LogLine(process_id=process_id, stream=name, timestamp=datetime.now(), text=text)
            await self._queue.put(_OutputLine(process_id, generation, line))

    async def _watch_exit(self, process_id: str, generation: int, proc, readers: list):
        # Exit is reported only after every line of this run was queued
        await asyncio.gather(*readers, return_exceptions=True)
        exit_code = await proc.wait()
        await self._queue.put(_Exited(process_id, generation, exit_code))

    async def _terminate(self, proc, process_id: str) -> Optional[int]:
        """SIGTERM the process group, escalate to SIGKILL after the grace period."""
        if proc.returncode is not None:
            return proc.returncode

        self._signal(proc, signal.SIGTERM)
        try:
            return await asyncio.wait_for(proc.wait(), timeout=self.settings.stop_grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process_id} did not stop gracefully, forcing kill")
            self._signal(proc, signal.SIGKILL)
            return await proc.wait()

    @staticmethod
    def _signal(proc, sig):
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.send_signal(sig)

    # Dispatcher

    async def _dispatch_loop(self):
        while True:
            message = await self._queue.get()
            try:
                handle = self._handles.get(message.process_id)
                if handle is None:
                    continue
                if isinstance(message, _OutputLine):
                    self._on_line(handle, message)
                elif isinstance(message, _BlockIdle):
                    self._on_block_idle(handle, message)
                else:
                    self._on_exit(handle, message)
            except Exception as e:
                logger.error(f"Error handling output of process {message.process_id}: {e}")
            finally:
                self._queue.task_done()

    def _context(self, record: ManagedProcess) -> ClassificationContext:
        return ClassificationContext(framework=record.framework)

    def _on_line(self, handle: _ProcessHandle, message: _OutputLine):
        record = handle.record
        line = message.line
        self.store.append_line(record.id, line)

        if message.generation != handle.generation:
            return

        context = self._context(record)
        errors = self._buffer_block(handle, line, context)
        errors.extend(classify(line, context))
        # Most severe last, so the latest recorded error carries the decision
        errors.sort(key=lambda e: e.severity.rank)
        self._handle_errors(handle, errors)

    def _on_block_idle(self, handle: _ProcessHandle, message: _BlockIdle):
        if message.generation != handle.generation or message.block_id != handle.block_id:
            return
        self._handle_errors(handle, self._flush_block(handle))

    def _handle_errors(self, handle: _ProcessHandle, errors: list[ClassifiedError]):
        if not errors:
            return

        record = handle.record
        for error in errors:
            self._record_error(handle, error)

        if record.state != ProcessState.RUNNING or handle.stop_requested or handle.pending_decision is not None:
            return
        self._reset_restart_count(handle)
        decision = self.policy.decide(self.store.history(record.id), record.restart_count, alive=True)
        self._apply_live_decision(handle, decision)

    def _buffer_block(self, handle: _ProcessHandle, line: LogLine, context) -> list[ClassifiedError]:
        """Collect multi-line error blocks. Returns errors of a block this line closed."""
        closed = []
        if handle.block:
            if line.text[:1].isspace():
                handle.block.append(line)
                if len(handle.block) >= self.settings.error_block_lines:
                    closed = self._flush_block(handle, context)
                else:
                    self._schedule_block_flush(handle)
                return closed
            if handle.block_keeps_terminator:
                handle.block.append(line)
                return self._flush_block(handle, context)
            closed = self._flush_block(handle, context)

        if is_block_start(line.text):
            handle.block = [line]
            handle.block_id += 1
            handle.block_keeps_terminator = block_keeps_terminator(line.text)
            self._schedule_block_flush(handle)
        return closed

    def _schedule_block_flush(self, handle: _ProcessHandle):
        """(Re)arm the idle timer that closes a block the process stopped writing to."""
        self._cancel_block_timer(handle)
        message = _BlockIdle(handle.record.id, handle.generation, handle.block_id)
        handle.block_timer = asyncio.get_running_loop().call_later(
            self.settings.error_block_idle, self._queue.put_nowait, message
        )

    @staticmethod
    def _cancel_block_timer(handle: _ProcessHandle):
        if handle.block_timer is not None:
            handle.block_timer.cancel()
            handle.block_timer = None

    def _flush_block(self, handle: _ProcessHandle, context=None) -> list[ClassifiedError]:
        self._cancel_block_timer(handle)
        block, handle.block = handle.block, []
        if not block:
            return []
        return classify_block(block, context or self._context(handle.record))

    def _reset_restart_count(self, handle: _ProcessHandle):
        """Forget earlier restarts once the current run has been up long enough."""
        record = handle.record
        reset_after = self.settings.restart_reset_after_seconds
        if reset_after <= 0 or not record.restart_count or record.started_at is None:
            return
        runtime = (datetime.now() - record.started_at).total_seconds()
        if runtime >= reset_after:
            logger.info(f"Process {record.id} ran {runtime:.0f}s, resetting restart count")
            record.restart_count = 0

    def _apply_live_decision(self, handle: _ProcessHandle, decision: RecoveryDecision):
        if decision.action == RecoveryAction.KEEP_ALIVE:
            return

        record = handle.record
        if decision.action == RecoveryAction.GIVE_UP:
            self._transition(handle, ProcessState.CRASHED, decision.reason)
            self._transition(handle, ProcessState.GIVEN_UP, decision.reason)
        else:
            # Applied by _on_exit once the terminated process is gone
            logger.warning(f"Restarting running process {record.id}: {decision.reason}")
            handle.pending_decision = decision

        if handle.proc is not None:
            self._spawn_task(self._terminate(handle.proc, record.id))

    def _on_exit(self, handle: _ProcessHandle, message: _Exited):
        if message.generation != handle.generation:
            return

        record = handle.record
        record.pid = None
        record.last_exit_code = message.exit_code
        for error in self._flush_block(handle):
            self._record_error(handle, error)

        if record.state.is_terminal or handle.stop_requested:
            self.store.save_record(record)
            return
        if record.state != ProcessState.RUNNING:
            return

        self._transition(handle, ProcessState.CRASHED, f"exited with code {message.exit_code}")

        decision, handle.pending_decision = handle.pending_decision, None
        if decision is None:
            # The policy reads the latest error, so the crash itself must be the latest Critical
            latest = self.store.history(record.id).latest_error()
            if not handle.run_had_critical or latest is None or latest.severity != Severity.CRITICAL:
                self._record_error(
                    handle,
                    ClassifiedError(
                        process_id=record.id,
                        timestamp=datetime.now(),
                        category=ErrorCategory.UNKNOWN,
                        severity=Severity.CRITICAL,
                        raw_line=f"process exited with code {message.exit_code}",
                        matched_pattern="process-exit",
                    ),
                )
            self._reset_restart_count(handle)
            decision = self.policy.decide(self.store.history(record.id), record.restart_count)

        if decision.restarts:
            handle.env_overrides.update(decision.environment)
            self._transition(handle, ProcessState.RESTARTING, decision.reason)
            handle.restart_task = self._spawn_task(self._restart_after(handle, decision.delay))
        else:
            self._transition(handle, ProcessState.GIVEN_UP, decision.reason)

    async def _restart_after(self, handle: _ProcessHandle, delay: float):
        record = handle.record
        if delay > 0:
            logger.info(f"Restarting process {record.id} in {delay:.2f}s")
            await asyncio.sleep(delay)

        if handle.stop_requested or record.state != ProcessState.RESTARTING:
            return

        record.restart_count += 1
        self._transition(handle, ProcessState.STARTING, f"restart {record.restart_count}")
        await self._launch(handle)


# Global process supervisor instance
process_supervisor = ProcessSupervisor()
