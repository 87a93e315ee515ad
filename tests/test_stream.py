"""
Unit tests for engine output streaming and cloud output scanning.
"""

import asyncio
import sys
import textwrap

import pytest

from workbench.execution.stream import (
    STDERR,
    STDOUT,
    TUNNEL_HINT,
    CloudOutputScanner,
    pump_output,
)

SESSION = "a" * 40
BUILD = "b1" * 20


async def _spawn(script):
    return await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        textwrap.dedent(script),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


class TestPumpOutput:
    """Test cases for pump_output."""

    @pytest.mark.asyncio
    async def test_lines_forwarded_per_stream(self):
        """Test every line reaches the handler with its stream name."""
        process = await _spawn(
            """
            import sys
            print("one", flush=True)
            print("warning", file=sys.stderr, flush=True)
            print("two", flush=True)
            sys.exit(3)
            """
        )
        lines = []

        exit_code = await pump_output(process, lambda stream, text: lines.append((stream, text)))

        assert exit_code == 3
        assert [t for s, t in lines if s == STDOUT] == ["one", "two"]
        assert [t for s, t in lines if s == STDERR] == ["warning"]

    @pytest.mark.asyncio
    async def test_async_handler(self):
        """Test coroutine handlers are awaited."""
        process = await _spawn("print('hello')")
        seen = []

        async def handler(stream, text):
            seen.append(text)

        assert await pump_output(process, handler) == 0
        assert seen == ["hello"]

    @pytest.mark.asyncio
    async def test_undecodable_bytes_replaced(self):
        """Test invalid UTF-8 does not break streaming."""
        process = await _spawn("import sys; sys.stdout.buffer.write(b'bad \\xff byte\\n')")
        seen = []

        await pump_output(process, lambda stream, text: seen.append(text))

        assert seen == ["bad � byte"]

    @pytest.mark.asyncio
    async def test_line_longer_than_reader_limit(self):
        """Test a line past the 64 KiB reader limit is forwarded whole."""
        process = await _spawn(
            """
            import sys
            print("x" * 70000, flush=True)
            print("after", flush=True)
            print("y" * 70000, file=sys.stderr, end="", flush=True)
            """
        )
        lines = []

        exit_code = await asyncio.wait_for(
            pump_output(process, lambda stream, text: lines.append((stream, text))), 10
        )

        assert exit_code == 0
        assert lines.count((STDOUT, "x" * 70000)) == 1
        assert (STDOUT, "after") in lines
        assert (STDERR, "y" * 70000) in lines

    @pytest.mark.asyncio
    async def test_reader_failure_does_not_hang(self):
        """Test a broken stream ends the pump with the error instead of blocking."""
        process = await _spawn("print('hello')")

        async def broken(*args, **kwargs):
            raise RuntimeError("stream broke")

        process.stdout.readuntil = broken

        with pytest.raises(RuntimeError, match="stream broke"):
            await asyncio.wait_for(pump_output(process, lambda stream, text: None), 10)
        await process.wait()


class TestCloudOutputScanner:
    """Test cases for CloudOutputScanner."""

    def test_session_build_and_dashboard(self):
        """Test identifiers are collected from dashboard links."""
        scanner = CloudOutputScanner()
        line = f"View build at https://automate.browserstack.com/builds/{BUILD}/sessions/{SESSION}."

        result = scanner.scan(line)
        meta = scanner.session_meta()

        assert result.meta_changed is True
        assert meta.session_id == SESSION
        assert meta.build_id == BUILD
        assert meta.dashboard_url == f"https://automate.browserstack.com/builds/{BUILD}/sessions/{SESSION}"

    def test_repeated_identifiers_unchanged(self):
        """Test seeing the same identifiers again reports no change."""
        scanner = CloudOutputScanner()
        scanner.scan(f"session_id: {SESSION}")

        assert scanner.scan(f"session_id: {SESSION}").meta_changed is False

    def test_no_identifiers(self):
        """Test ordinary output yields no session metadata."""
        scanner = CloudOutputScanner()

        assert scanner.scan("Running 1 test using 1 worker").meta_changed is False
        assert scanner.session_meta() is None

    def test_tunnel_failure_reported_once(self):
        """Test the tunnel hint is produced once per run."""
        scanner = CloudOutputScanner()

        first = scanner.scan("BrowserStack Local binary failed to start")
        second = scanner.scan("browserstack-local error: could not connect")

        assert first.tunnel_error == TUNNEL_HINT
        assert second.tunnel_error is None
