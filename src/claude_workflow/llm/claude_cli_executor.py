"""Claude CLI subprocess executor."""

import asyncio
import json
import logging
import os
import re
import time
from typing import List, Optional

from ..core.errors import (
    AgentExecutionError,
    AgentNotFoundError,
    AgentTimeoutError,
    PromptTooLongError,
    WorkflowCancelledError,
)
from .base import AgentExecutor, AgentProgressEvent, AgentRequest, AgentResult, ProgressCallback

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3600.0

# How often a running subprocess checks the cancel token
CANCEL_POLL_INTERVAL = 0.5

READ_CHUNK_SIZE = 4096

PROMPT_TOO_LONG_MARKER = "Prompt is too long"

# Set by a parent Claude session; the CLI refuses to nest when it is present
_NESTED_SESSION_ENV_VARS = frozenset({"CLAUDECODE"})

_SESSION_ID_PATTERNS = (
    re.compile(r'"session_id"\s*:\s*"([^"]+)"'),
    re.compile(r"session_id\s*:\s*([a-zA-Z0-9\-]+)"),
)


def _summarize_tool_input(tool_name: str, tool_input: dict) -> Optional[str]:
    """Extract a short human-readable summary from tool input."""
    if not tool_input:
        return None

    if tool_name in ("Read", "Edit", "Write"):
        path = tool_input.get("file_path") or tool_input.get("path", "")
        if path:
            # Last 3 path segments for brevity
            parts = path.replace("\\", "/").split("/")
            return "/".join(parts[-3:]) if len(parts) > 3 else path
    elif tool_name == "Bash":
        cmd = tool_input.get("command", "")
        return cmd[:60] if cmd else None
    elif tool_name == "Grep":
        pattern = tool_input.get("pattern", "")
        path = tool_input.get("path", "")
        if pattern and path:
            parts = path.replace("\\", "/").split("/")
            short_path = "/".join(parts[-2:]) if len(parts) > 2 else path
            return f'"{pattern}" in {short_path}'
        return f'"{pattern}"' if pattern else None
    elif tool_name == "Glob":
        return tool_input.get("pattern") or None
    else:
        for key in ("query", "url", "description", "prompt"):
            if key in tool_input:
                val = str(tool_input[key])
                return val[:60] if val else None

    return None


def parse_session_id(output: str) -> Optional[str]:
    """Session id from Claude CLI output, JSON or stream-json.

    Structured result and init events win; a plain-text match is the
    fallback for output that is not line-delimited JSON.
    """
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if not isinstance(event, dict) or not event.get("session_id"):
            continue
        if event.get("type") == "result":
            return event["session_id"]
        if event.get("type") == "system" and event.get("subtype") == "init":
            return event["session_id"]

    for pattern in _SESSION_ID_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


class _StreamState:
    """Accumulates what a stream-json run produced."""

    def __init__(self):
        self.text_chunks: List[str] = []
        self.result_text: Optional[str] = None
        self.structured_output = None
        self.result_is_error = False
        self.session_id: Optional[str] = None

    def final_output(self) -> str:
        """Output in the same shape ``--output-format json`` would give."""
        if self.structured_output is not None:
            return json.dumps({
                "type": "result",
                "result": self.result_text or "",
                "structured_output": self.structured_output,
            })
        if self.result_text:
            return self.result_text
        return "".join(self.text_chunks)


def _process_stream_line(
    line: str,
    state: _StreamState,
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    """Parse a single JSON line from --output-format stream-json."""
    line = line.strip()
    if not line:
        return

    emit = on_progress or (lambda event: None)

    try:
        event = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        # Not JSON: CLI version mismatch or plain output, treat as raw text
        state.text_chunks.append(line + "\n")
        emit(AgentProgressEvent(type="text", text=line))
        return

    if not isinstance(event, dict):
        return

    event_type = event.get("type")

    if event_type == "assistant":
        for block in event.get("message", {}).get("content", []):
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text", "")
                state.text_chunks.append(text)
                emit(AgentProgressEvent(type="text", text=text))
            elif block_type == "thinking":
                emit(AgentProgressEvent(type="thinking", text=block.get("thinking", "")))
            elif block_type == "tool_use":
                tool_name = block.get("name", "unknown")
                tool_input = block.get("input", {})
                emit(AgentProgressEvent(
                    type="tool_use",
                    tool_name=tool_name,
                    tool_input=tool_input,
                    summary=_summarize_tool_input(tool_name, tool_input),
                ))

    elif event_type == "user":
        content = event.get("message", {}).get("content", [])
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    emit(AgentProgressEvent(
                        type="tool_result",
                        is_error=bool(block.get("is_error", False)),
                    ))

    elif event_type == "system":
        if event.get("subtype") == "init" and event.get("session_id"):
            state.session_id = event["session_id"]

    elif event_type == "result":
        if event.get("session_id"):
            state.session_id = event["session_id"]
        state.result_text = event.get("result") or state.result_text
        if event.get("structured_output") is not None:
            state.structured_output = event["structured_output"]
        state.result_is_error = bool(event.get("is_error", False))

    else:
        logger.debug(f"Ignoring stream-json event type: {event_type}")


class ClaudeCLIExecutor(AgentExecutor):
    """AgentExecutor running ``claude --print`` as a subprocess.

    The subprocess is driven with asyncio; both public methods are
    synchronous and block until the run ends, times out, or is cancelled.
    """

    def __init__(
        self,
        executable: str = "claude",
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.executable = executable
        self.default_timeout = default_timeout

    def build_command(self, request: AgentRequest, streaming: bool) -> List[str]:
        cmd = [self.executable, "--print"]
        if request.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if streaming:
            cmd += ["--output-format", "stream-json", "--verbose"]
        elif request.json_schema:
            cmd += ["--output-format", "json"]
        if request.json_schema:
            cmd += ["--json-schema", request.json_schema]
        if request.session_id:
            cmd += ["--resume", request.session_id]
        return cmd

    def execute(self, request: AgentRequest) -> AgentResult:
        return asyncio.run(self._run(request, streaming=False, on_progress=None))

    def execute_streaming(
        self,
        request: AgentRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AgentResult:
        return asyncio.run(self._run(request, streaming=True, on_progress=on_progress))

    def _build_env(self, request: AgentRequest) -> dict:
        env = os.environ.copy()
        for key in _NESTED_SESSION_ENV_VARS:
            env.pop(key, None)
        env.update(request.env or {})
        return env

    async def _run(
        self,
        request: AgentRequest,
        streaming: bool,
        on_progress: Optional[ProgressCallback],
    ) -> AgentResult:
        if request.cancel is not None:
            request.cancel.raise_if_cancelled()

        cmd = self.build_command(request, streaming)
        timeout = request.timeout or self.default_timeout
        start_time = time.monotonic()

        logger.debug(f"Running {' '.join(cmd)} (timeout {timeout}s, cwd {request.working_dir})")

        # The prompt goes through stdin so long prompts never hit argv limits
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(request),
                cwd=str(request.working_dir) if request.working_dir else None,
            )
        except FileNotFoundError as e:
            raise AgentNotFoundError(
                f"claude CLI not found ({self.executable}): is it installed?"
            ) from e

        state = _StreamState()
        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []

        async def feed_stdin():
            try:
                process.stdin.write(request.prompt.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("claude closed stdin before the prompt was fully written")
            finally:
                process.stdin.close()

        async def read_stdout():
            buffer = b""
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                if not streaming:
                    stdout_chunks.append(chunk.decode(errors="replace"))
                    continue
                buffer += chunk
                while b"\n" in buffer:
                    line_bytes, buffer = buffer.split(b"\n", 1)
                    _process_stream_line(line_bytes.decode(errors="replace"), state, on_progress)
            if streaming and buffer:
                _process_stream_line(buffer.decode(errors="replace"), state, on_progress)

        async def read_stderr():
            while True:
                chunk = await process.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                stderr_chunks.append(chunk.decode(errors="replace"))

        async def watch_cancel():
            while True:
                if request.cancel is not None and request.cancel.cancelled:
                    return
                await asyncio.sleep(CANCEL_POLL_INTERVAL)

        run = asyncio.ensure_future(asyncio.gather(
            feed_stdin(), read_stdout(), read_stderr(), process.wait(),
        ))
        watcher = asyncio.ensure_future(watch_cancel())

        timed_out = False
        cancelled = False
        try:
            done, _ = await asyncio.wait(
                {run, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
            if run not in done:
                if watcher in done:
                    cancelled = True
                else:
                    timed_out = True
                self._kill(process)
                await process.wait()
                run.cancel()
                try:
                    await run
                except (asyncio.CancelledError, Exception) as e:
                    logger.debug(f"Stream readers stopped: {e!r}")
            else:
                # Surface reader errors
                run.result()
        finally:
            watcher.cancel()

        duration = time.monotonic() - start_time
        stderr_text = "".join(stderr_chunks)
        output = state.final_output() if streaming else "".join(stdout_chunks)

        if cancelled:
            logger.info(f"claude run cancelled after {duration:.1f}s")
            raise WorkflowCancelledError("agent execution cancelled")
        if timed_out:
            logger.warning(f"claude timed out after {timeout}s, process killed")
            raise AgentTimeoutError(f"claude execution timeout after {timeout}s")

        if PROMPT_TOO_LONG_MARKER in stderr_text or (
            process.returncode != 0 and PROMPT_TOO_LONG_MARKER in output
        ):
            raise PromptTooLongError(
                "prompt is too long for the agent: reduce the plan or description size"
            )

        if process.returncode != 0:
            logger.error(
                f"claude failed: returncode={process.returncode}\n"
                f"STDERR: {stderr_text[:1000]}\n"
                f"STDOUT: {output[:1000]}"
            )
            raise AgentExecutionError(
                f"claude execution failed with exit code {process.returncode}",
                exit_code=process.returncode,
                stderr=stderr_text,
            )

        logger.debug(f"claude finished in {duration:.1f}s ({len(output)} chars of output)")
        session_id = state.session_id if streaming else parse_session_id(output)
        return AgentResult(
            output=output, exit_code=process.returncode, duration=duration, session_id=session_id,
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
