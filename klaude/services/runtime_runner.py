"""Execution loop: drive one runtime backend process per agent session.

The runner launches the selected backend, records it as the session's current
runtime process, streams its JSON output into the session log, and reports
the outcome to the AgentManager. Interruption is observed through the agent's
cancellation token, which the runner turns into a signal for its child.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal as signal_mod
import tempfile
from collections import deque
from dataclasses import replace
from typing import TYPE_CHECKING

from klaude.errors import StateViolationError
from klaude.infra import runtimes
from klaude.models.agent import RuntimeKind, RuntimeSelection, StartParams
from klaude.models.runtime_process import ProcessKind, RuntimeProcess
from klaude.services import session_log

if TYPE_CHECKING:
    from klaude.config import AppConfig
    from klaude.infra.db.runtime_processes import RuntimeProcessRepo
    from klaude.infra.db.sessions import SessionRepo
    from klaude.services.agent_manager import AgentManager
    from klaude.services.project_context import ProjectContext

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class _Execution:
    """Book-keeping for one live backend process."""

    def __init__(self, session_id: str, runtime: RuntimeKind, process: asyncio.subprocess.Process) -> None:
        self.session_id = session_id
        self.runtime = runtime
        self.process = process
        self.pending_turns = 1
        self.result_text: str | None = None
        self.error: str | None = None
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.record: RuntimeProcess | None = None


class RuntimeRunner:
    """Runs agent sessions on their runtime backends."""

    def __init__(
        self,
        manager: AgentManager,
        session_repo: SessionRepo,
        process_repo: RuntimeProcessRepo,
        project: ProjectContext,
        config: AppConfig,
    ) -> None:
        self._manager = manager
        self._sessions = session_repo
        self._processes = process_repo
        self._project = project
        self._config = config
        self._tasks: dict[str, asyncio.Task] = {}
        self._executions: dict[str, _Execution] = {}

    def _log(self, session_id: str, kind: str, payload: dict) -> None:
        session_log.append_session_event(self._project.session_log_path(session_id), kind, payload)

    def start(self, session_id: str, selection: RuntimeSelection, params: StartParams) -> asyncio.Task:
        """Start executing a session in the background."""
        task = asyncio.create_task(self._run(session_id, selection, params), name=f"runtime-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))
        return task

    def is_running(self, session_id: str) -> bool:
        return session_id in self._executions

    def runtime_of(self, session_id: str) -> RuntimeKind | None:
        execution = self._executions.get(session_id)
        return execution.runtime if execution else None

    async def send_message(self, session_id: str, text: str) -> bool:
        """Queue a user message on a live agent's stdin.

        Only runtimes that read stream-json input accept this; returns False
        when the message could not be delivered.
        """
        execution = self._executions.get(session_id)
        if execution is None or not execution.runtime.supports_live_messages:
            return False
        stdin = execution.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        execution.pending_turns += 1
        try:
            stdin.write(runtimes.user_message_line(text))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            execution.pending_turns -= 1
            return False
        self._log(session_id, session_log.USER, {"message": text})
        return True

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Signal every running agent and wait briefly for the loops to finish."""
        self._manager.cancel_all("SIGTERM")
        tasks = list(self._tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        logger.info("Runtime runner stopped (%d finished, %d cancelled)", len(done), len(pending))

    # --- Execution ---

    async def _run(self, session_id: str, selection: RuntimeSelection, params: StartParams) -> None:
        instructions_file = None
        try:
            if params.instructions and RuntimeKind.GEMINI in (selection.runtime, selection.fallback_runtime):
                instructions_file = self._write_instructions(session_id, params.instructions)
                params = replace(params, instructions_path=instructions_file)

            execution = await self._launch(session_id, selection, params)
            if execution is None:
                return
            await self._supervise(execution, params)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Runtime loop for %s crashed", session_id)
            await self._fail(session_id, f"Runtime loop crashed: {e}")
        finally:
            self._executions.pop(session_id, None)
            if instructions_file:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(instructions_file)

    def _write_instructions(self, session_id: str, instructions: str) -> str:
        fd, path = tempfile.mkstemp(prefix=f"klaude-{session_id[:8]}-", suffix=".md")
        with os.fdopen(fd, "w") as f:
            f.write(instructions)
        return path

    async def _launch(
        self, session_id: str, selection: RuntimeSelection, params: StartParams
    ) -> _Execution | None:
        candidates = [selection.runtime]
        if selection.fallback_runtime and selection.fallback_runtime != selection.runtime:
            candidates.append(selection.fallback_runtime)

        last_error = ""
        for index, runtime in enumerate(candidates):
            command = runtimes.build_command(runtime, params, self._config)
            env = {**os.environ, **(command.env or {})}
            logger.debug("[runtime] session=%s command: %s", session_id, command.full_command)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command.argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=command.cwd,
                    env=env,
                    limit=4 * 1024 * 1024,
                )
            except OSError as e:
                last_error = f"Failed to launch {runtime.value} runtime ({command.program}): {e}"
                logger.warning("[runtime] session=%s %s", session_id, last_error)
                self._log(session_id, runtimes.ERROR, {"message": last_error, "runtime": runtime.value})
                if index + 1 < len(candidates):
                    self._log(session_id, session_log.SYSTEM, {
                        "message": f"Falling back to {candidates[index + 1].value} runtime",
                    })
                continue

            logger.info("[runtime] session=%s runtime=%s pid=%d", session_id, runtime.value, process.pid)
            execution = _Execution(session_id, runtime, process)
            execution.record = await self._processes.create(
                RuntimeProcess(
                    session_id=session_id,
                    pid=process.pid,
                    kind=ProcessKind.BACKEND,
                    runtime=runtime.value,
                    is_current=True,
                )
            )
            if index > 0:
                await self._sessions.merge_metadata(
                    session_id, {"runtimeKind": runtime.value, "runtimeFallbackUsed": True}
                )
            self._executions[session_id] = execution
            return execution

        await self._fail(session_id, last_error or "No runtime available")
        return None

    async def _supervise(self, execution: _Execution, params: StartParams) -> None:
        process = execution.process
        agent = self._manager.get_agent(execution.session_id)

        if execution.runtime == RuntimeKind.CLAUDE and process.stdin is not None:
            try:
                process.stdin.write(runtimes.user_message_line(params.prompt))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # Backend exited before reading its prompt.
                logger.debug("[runtime] session=%s closed stdin early", execution.session_id)
        elif process.stdin is not None:
            process.stdin.close()

        watcher = asyncio.create_task(self._watch_cancellation(execution, agent.token if agent else None))
        readers = [
            asyncio.create_task(self._read_stdout(execution)),
            asyncio.create_task(self._read_stderr(execution)),
        ]
        try:
            await asyncio.gather(*readers)
            exit_code = await process.wait()
        except BaseException:
            # Leaving early: stop the backend before propagating.
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            await self._terminate(execution)
            raise
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        if execution.record and execution.record.id:
            await self._processes.mark_exited(execution.record.id, exit_code)
        logger.info("[runtime] session=%s exited code=%s", execution.session_id, exit_code)
        await self._report(execution, exit_code)

    async def _watch_cancellation(self, execution: _Execution, token) -> None:
        if token is None:
            return
        sig_name = await token.wait() or "SIGINT"
        process = execution.process
        if process.returncode is not None:
            return
        try:
            sig = signal_mod.Signals[sig_name]
        except KeyError:
            sig = signal_mod.SIGINT
        logger.info("[runtime] session=%s forwarding %s to pid %d", execution.session_id, sig.name, process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(sig)
        try:
            await asyncio.wait_for(process.wait(), self._config.wrapper.interrupt_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("[runtime] session=%s ignored %s; terminating", execution.session_id, sig.name)
            with contextlib.suppress(ProcessLookupError):
                process.terminate()

    async def _terminate(self, execution: _Execution) -> None:
        """Stop the backend and record its exit."""
        process = execution.process
        if process.returncode is None:
            logger.warning("[runtime] session=%s terminating orphaned pid %d", execution.session_id, process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), self._config.wrapper.interrupt_grace_seconds)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if execution.record and execution.record.id:
            await self._processes.mark_exited(execution.record.id, process.returncode)

    async def _read_stdout(self, execution: _Execution) -> None:
        assert execution.process.stdout is not None
        async for raw in execution.process.stdout:
            line = raw.decode(errors="replace")
            for event in runtimes.parse_runtime_line(execution.runtime, line):
                self._log(execution.session_id, event.kind, event.payload)
                await self._apply_event(execution, event)

    async def _read_stderr(self, execution: _Execution) -> None:
        assert execution.process.stderr is not None
        async for raw in execution.process.stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                execution.stderr_tail.append(line)
                logger.debug("[runtime:%s] %s", execution.session_id[:8], line)

    async def _apply_event(self, execution: _Execution, event: runtimes.RuntimeEvent) -> None:
        payload = event.payload
        if event.kind == runtimes.CLAUDE_SESSION:
            await self._sessions.set_claude_session_id(execution.session_id, payload["sessionId"])
        elif event.kind == runtimes.MESSAGE and payload.get("messageType") == "assistant" and payload.get("text"):
            execution.result_text = payload["text"]
        elif event.kind == runtimes.ERROR:
            execution.error = payload.get("message")
        elif event.kind == runtimes.RESULT:
            if payload.get("isError"):
                execution.error = str(payload.get("result") or payload.get("stopReason") or "Runtime reported an error")
            elif isinstance(payload.get("result"), str):
                execution.result_text = payload["result"]
            execution.pending_turns -= 1
            stdin = execution.process.stdin
            if execution.pending_turns <= 0 and stdin is not None and not stdin.is_closing():
                # No queued messages left: closing stdin lets the backend exit.
                stdin.close()

    async def _report(self, execution: _Execution, exit_code: int) -> None:
        agent = self._manager.get_agent(execution.session_id)
        if agent is None or agent.status.is_terminal:
            return
        try:
            if exit_code == 0 and not execution.error:
                await self._manager.complete_agent(execution.session_id, execution.result_text)
            else:
                error = execution.error or (
                    execution.stderr_tail[-1] if execution.stderr_tail else f"Runtime exited with code {exit_code}"
                )
                await self._manager.fail_agent(execution.session_id, error)
        except StateViolationError:
            # Interrupted between the check above and the write.
            logger.debug("Session %s finished concurrently", execution.session_id)

    async def _fail(self, session_id: str, error: str) -> None:
        agent = self._manager.get_agent(session_id)
        if agent is None or agent.status.is_terminal:
            return
        try:
            await self._manager.fail_agent(session_id, error)
        except StateViolationError:
            logger.debug("Session %s finished concurrently", session_id)
