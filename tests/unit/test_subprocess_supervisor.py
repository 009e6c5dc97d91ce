"""Tests for SubprocessStreamSupervisor using real child processes."""

import asyncio
import sys
import textwrap
import time

import pytest

from agent_pipeline.errors.exceptions import (
    ExecutionCancelledError,
    IdleTimeoutError,
    ProcessExitError,
    ProcessTimeoutError,
    SpawnError,
    StartupTimeoutError,
)
from agent_pipeline.llm.base import CancellationHandle
from agent_pipeline.llm.messages import AssistantMessage, ErrorMessage, ResultMessage
from agent_pipeline.llm.subprocess_supervisor import SubprocessSpec, SubprocessStreamSupervisor


def python_spec(script: str, **kwargs) -> SubprocessSpec:
    return SubprocessSpec(command=[sys.executable, "-c", textwrap.dedent(script)], **kwargs)


async def collect(spec: SubprocessSpec) -> list:
    return [value async for value in SubprocessStreamSupervisor().stream_jsonl(spec)]


class TestLineDelimitedProtocol:
    """Parsing of stdout as one JSON value per line."""

    @pytest.mark.asyncio
    async def test_values_arrive_in_line_order(self):
        """Two lines produce exactly the two parsed values, in order."""
        spec = python_spec("""
            import sys
            sys.stdout.write('{"type":"start"}\\n{"type":"done","ok":true}\\n')
            sys.stdout.flush()
        """)

        assert await collect(spec) == [{"type": "start"}, {"type": "done", "ok": True}]

    @pytest.mark.asyncio
    async def test_garbage_lines_are_skipped(self):
        """Undecodable and blank lines do not abort the stream."""
        spec = python_spec("""
            print("not json at all", flush=True)
            print("", flush=True)
            print('{"type":"a"}', flush=True)
            print('{"partial":', flush=True)
            print('{"type":"b"}', flush=True)
        """)

        assert await collect(spec) == [{"type": "a"}, {"type": "b"}]

    @pytest.mark.asyncio
    async def test_final_line_without_newline_is_parsed(self):
        """A trailing line with no newline is still delivered at EOF."""
        spec = python_spec("""
            import sys
            sys.stdout.write('{"n":1}\\n{"n":2}')
        """)

        assert await collect(spec) == [{"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_clean_exit_without_lines_yields_nothing(self):
        """Exit 0 with no stdout is an empty sequence in line mode."""
        spec = python_spec("pass")

        assert await collect(spec) == []

    @pytest.mark.asyncio
    async def test_system_prompt_and_prompt_written_to_stdin(self):
        """stdin receives the system line, a blank line, then the prompt."""
        spec = python_spec(
            """
            import json, sys
            print(json.dumps({"stdin": sys.stdin.read()}), flush=True)
            """,
            prompt="Review this",
            system_prompt="Be brief",
        )

        values = await collect(spec)

        assert values == [{"stdin": "System: Be brief\n\nReview this\n"}]

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_with_stderr(self):
        """A failing exit code surfaces stderr text and the code."""
        spec = python_spec("""
            import sys
            print('{"type":"start"}', flush=True)
            sys.stderr.write("boom: credit balance is too low\\n")
            sys.exit(3)
        """)
        seen = []

        with pytest.raises(ProcessExitError) as exc_info:
            async for value in SubprocessStreamSupervisor().stream_jsonl(spec):
                seen.append(value)

        assert seen == [{"type": "start"}]
        assert exc_info.value.exit_code == 3
        assert str(exc_info.value) == "boom: credit balance is too low"

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_stderr_uses_generic_message(self):
        """No stderr gives a generic process failure message."""
        spec = python_spec("import sys; sys.exit(2)")

        with pytest.raises(ProcessExitError, match="Process exited with code 2"):
            await collect(spec)

    @pytest.mark.asyncio
    async def test_stderr_character_split_across_reads_is_intact(self):
        """A multi-byte character written in two pieces decodes as one."""
        spec = python_spec("""
            import sys, time
            sys.stderr.buffer.write(b"boom: caf\\xc3")
            sys.stderr.flush()
            time.sleep(0.2)
            sys.stderr.buffer.write(b"\\xa9 failed\\n")
            sys.stderr.flush()
            sys.exit(1)
        """)

        with pytest.raises(ProcessExitError) as exc_info:
            await collect(spec)

        assert str(exc_info.value) == "boom: café failed"

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        """A missing executable is reported as a spawn failure."""
        spec = SubprocessSpec(command=["/nonexistent/agent-binary-for-tests"])

        with pytest.raises(SpawnError) as exc_info:
            await collect(spec)

        assert exc_info.value.command == "/nonexistent/agent-binary-for-tests"


class TestWatchdogs:
    """Startup and idle timeouts, and stderr counting as activity."""

    @pytest.mark.asyncio
    async def test_stderr_activity_keeps_run_alive(self):
        """Regular stderr output prevents an idle timeout even with no stdout."""
        spec = python_spec(
            """
            import sys, time
            for _ in range(6):
                sys.stderr.write("working...\\n")
                sys.stderr.flush()
                time.sleep(0.2)
            """,
            idle_timeout=0.6,
            startup_timeout=5,
        )

        assert await collect(spec) == []

    @pytest.mark.asyncio
    async def test_long_startup_window_outlasts_short_idle_window(self):
        """First output after the idle window but inside the startup window succeeds."""
        spec = python_spec(
            """
            import time
            time.sleep(0.8)
            print('{"type":"late"}', flush=True)
            """,
            idle_timeout=0.3,
            startup_timeout=5,
        )

        assert await collect(spec) == [{"type": "late"}]

    @pytest.mark.asyncio
    async def test_no_activity_times_out_at_startup(self):
        """A silent process is killed once the startup window passes."""
        spec = python_spec("import time; time.sleep(30)", idle_timeout=0.3)
        started = time.monotonic()

        with pytest.raises(StartupTimeoutError) as exc_info:
            await collect(spec)

        assert time.monotonic() - started < 10
        assert "without any output" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_stall_after_output_is_idle_timeout(self):
        """Output followed by silence fails with an idle timeout; yielded values stay."""
        spec = python_spec(
            """
            import time
            print('{"type":"start"}', flush=True)
            time.sleep(30)
            """,
            idle_timeout=0.4,
            startup_timeout=5,
        )
        seen = []

        with pytest.raises(IdleTimeoutError) as exc_info:
            async for value in SubprocessStreamSupervisor().stream_jsonl(spec):
                seen.append(value)

        assert seen == [{"type": "start"}]
        assert isinstance(exc_info.value, ProcessTimeoutError)
        assert str(exc_info.value) == "Process timed out after 0.4s without output"

    @pytest.mark.asyncio
    async def test_zero_timeout_disables_watchdog(self):
        """A timeout of 0 means no watchdog."""
        spec = python_spec(
            """
            import time
            time.sleep(0.5)
            print('{"ok":true}', flush=True)
            """,
            idle_timeout=0,
            startup_timeout=0,
        )

        assert await collect(spec) == [{"ok": True}]


class TestCancellation:
    """Cancellation kills the process and is never reported as a timeout."""

    @pytest.mark.asyncio
    async def test_cancel_during_run(self):
        """Cancelling mid-run raises a cancellation error promptly."""
        handle = CancellationHandle()
        spec = python_spec("import time; time.sleep(30)", idle_timeout=20, cancellation=handle)
        asyncio.get_running_loop().call_later(0.3, handle.cancel, "user stop")
        started = time.monotonic()

        with pytest.raises(ExecutionCancelledError) as exc_info:
            await collect(spec)

        assert time.monotonic() - started < 10
        assert str(exc_info.value) == "Process aborted"

    @pytest.mark.asyncio
    async def test_cancel_wins_over_simultaneous_timeout(self):
        """Cancellation at the timeout deadline is reported as cancellation."""
        handle = CancellationHandle()
        asyncio.get_running_loop().call_later(0.3, handle.cancel)
        spec = python_spec("import time; time.sleep(30)", idle_timeout=0.3, cancellation=handle)

        with pytest.raises(ExecutionCancelledError):
            await collect(spec)

    @pytest.mark.asyncio
    async def test_cancel_wins_over_buffered_output(self):
        """Lines already buffered are not delivered after cancellation."""
        handle = CancellationHandle()
        spec = python_spec(
            """
            import time
            for i in range(200):
                print('{"i": %d}' % i, flush=True)
            time.sleep(30)
            """,
            idle_timeout=20,
            cancellation=handle,
        )
        seen = []

        with pytest.raises(ExecutionCancelledError):
            async for value in SubprocessStreamSupervisor().stream_jsonl(spec):
                seen.append(value)
                if len(seen) == 1:
                    handle.cancel()

        assert seen == [{"i": 0}]

    @pytest.mark.asyncio
    async def test_already_cancelled_handle_never_spawns(self):
        """A handle cancelled before the call fails without spawning."""
        handle = CancellationHandle()
        handle.cancel()
        spec = SubprocessSpec(command=["/nonexistent/agent-binary-for-tests"], cancellation=handle)

        with pytest.raises(ExecutionCancelledError):
            await collect(spec)


class TestPlainTextProtocol:
    """Captured stdout converted at exit."""

    @pytest.mark.asyncio
    async def test_success_gives_assistant_then_result(self):
        spec = python_spec('print("Hello"); print("World")')

        messages = await SubprocessStreamSupervisor().run_text(spec, session_id="s1")

        assert len(messages) == 2
        assert isinstance(messages[0], AssistantMessage)
        assert messages[0].text == "Hello\nWorld"
        assert isinstance(messages[1], ResultMessage)
        assert messages[1].is_success
        assert messages[1].result == "Hello\nWorld"
        assert messages[1].session_id == "s1"

    @pytest.mark.asyncio
    async def test_failure_with_stderr_gives_single_error(self):
        spec = python_spec('import sys; sys.stderr.write("Invalid API key\\n"); sys.exit(1)')

        messages = await SubprocessStreamSupervisor().run_text(spec)

        assert len(messages) == 1
        assert isinstance(messages[0], ErrorMessage)
        assert messages[0].error == "Invalid API key"

    @pytest.mark.asyncio
    async def test_clean_exit_without_output_is_missing_output(self):
        """Exit 0 and nothing printed is an error, not an empty success."""
        spec = python_spec("pass")

        messages = await SubprocessStreamSupervisor().run_text(spec)

        assert len(messages) == 1
        assert isinstance(messages[0], ErrorMessage)
        assert messages[0].error == "CLI process exited with code 0 and no output"


class TestSubprocessSpec:

    def test_startup_timeout_defaults_to_idle_timeout(self):
        assert SubprocessSpec(command=["x"], idle_timeout=42).effective_startup_timeout == 42
        assert SubprocessSpec(command=["x"], idle_timeout=42, startup_timeout=7).effective_startup_timeout == 7

    def test_stdin_payload_without_system_prompt(self):
        assert SubprocessSpec(command=["x"], prompt="hi").stdin_payload() == b"hi\n"
        assert SubprocessSpec(command=["x"]).stdin_payload() == b""
