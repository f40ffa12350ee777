"""Tests for supervised tunnel sessions."""

import asyncio
import json
import os
import signal
import sys
import textwrap
from unittest.mock import AsyncMock, patch

import pytest

from portalgun.errors import LaunchError
from portalgun.models import ForwardingAgent
from portalgun.tunnel import TunnelSession, open_tunnel

posix_only = pytest.mark.skipif(os.name != "posix", reason="relies on POSIX signals and shebangs")


def python_agent(source):
    """Command running source as a fake forwarding agent."""
    return [sys.executable, "-u", "-c", textwrap.dedent(source)]


async def collect(agen, timeout=10.0):
    """Drain an event stream, failing the test if it never closes."""
    async def _drain():
        return [(event.channel, event.line) async for event in agen]
    return await asyncio.wait_for(_drain(), timeout)


class TestTunnelSession:
    """Tests for TunnelSession."""

    @pytest.mark.asyncio
    async def test_normal_exit_delivers_every_line_in_order(self, endpoint):
        """Test all stdout lines arrive once, in order, then the stream closes."""
        command = python_agent("""
            for i in range(1, 6):
                print(f"line {i}")
        """)
        session = await TunnelSession.start(command, endpoint, 9000)

        events = await collect(session.events())

        assert events == [("stdout", f"line {i}") for i in range(1, 6)]
        assert await asyncio.wait_for(session.wait(), 10) == 0
        assert session.closed
        assert session.close_reason == "end of output"
        assert not session.running

    @pytest.mark.asyncio
    async def test_many_lines_with_slow_consumer(self, endpoint):
        """Test backpressure does not lose or duplicate lines."""
        command = python_agent("""
            for i in range(200):
                print(i)
        """)
        session = await TunnelSession.start(command, endpoint, 9000)

        received = []
        async for event in session.events():
            received.append(int(event.line))
            if len(received) % 50 == 0:
                await asyncio.sleep(0.05)

        assert received == list(range(200))
        await asyncio.wait_for(session.wait(), 10)

    @pytest.mark.asyncio
    async def test_blank_lines_are_skipped(self, endpoint):
        """Test empty lines are not delivered as events."""
        command = python_agent("""
            print("Starting session with SessionId: abc")
            print("")
            print("Port 9000 opened for sessionId abc.")
        """)
        session = await TunnelSession.start(command, endpoint, 9000)

        events = await collect(session.events())

        assert [line for _, line in events] == [
            "Starting session with SessionId: abc",
            "Port 9000 opened for sessionId abc.",
        ]
        await asyncio.wait_for(session.wait(), 10)

    @pytest.mark.asyncio
    async def test_diagnostic_line_closes_stream_while_agent_runs(self, endpoint):
        """Test the first stderr line ends the stream but not the agent."""
        command = python_agent("""
            import sys, time
            print("Starting session", flush=True)
            time.sleep(0.3)
            sys.stderr.write("An error occurred (TargetNotConnected)\\n")
            sys.stderr.flush()
            time.sleep(30)
        """)
        session = await TunnelSession.start(command, endpoint, 9000)

        events = await collect(session.events())

        assert ("stdout", "Starting session") in events
        assert ("stderr", "An error occurred (TargetNotConnected)") in events
        assert session.close_reason == "diagnostic output"
        assert session.running

        await asyncio.wait_for(session.close(), 15)
        assert not session.running

    @pytest.mark.asyncio
    async def test_blank_stderr_does_not_close_stream(self, endpoint):
        """Test whitespace-only stderr output is not a terminal signal."""
        command = python_agent("""
            import sys
            sys.stderr.write("\\n   \\n")
            sys.stderr.flush()
            print("still going")
        """)
        session = await TunnelSession.start(command, endpoint, 9000)

        events = await collect(session.events())

        assert events == [("stdout", "still going")]
        assert session.close_reason == "end of output"
        await asyncio.wait_for(session.wait(), 10)

    @pytest.mark.asyncio
    async def test_oversized_stderr_line_closes_stream(self, endpoint):
        """Test a stderr line too long to read still counts as diagnostic output."""
        command = python_agent("""
            import sys, time
            sys.stderr.write("x" * 200000 + "\\n")
            sys.stderr.flush()
            time.sleep(30)
        """)
        session = await TunnelSession.start(command, endpoint, 9000)

        events = await collect(session.events())

        assert events == []
        assert session.close_reason == "diagnostic output"
        assert session.running
        await asyncio.wait_for(session.close(), 15)

    @posix_only
    @pytest.mark.asyncio
    async def test_pipes_held_open_after_exit_close_stream(self, endpoint):
        """Test a child holding the pipes open cannot keep the stream alive."""
        command = ["/bin/sh", "-c", "sleep 20 & echo hi"]
        session = await TunnelSession.start(command, endpoint, 9000, drain_timeout=0.5)
        try:
            events = await collect(session.events(), timeout=5)

            assert events == [("stdout", "hi")]
            assert await asyncio.wait_for(session.wait(), 5) == 0
            assert session.closed
            assert not session.running
        finally:
            try:
                os.killpg(session.process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    @pytest.mark.asyncio
    async def test_slow_consumer_after_exit_gets_every_line(self, endpoint):
        """Test lines waiting on the consumer are not abandoned once the agent exits."""
        command = python_agent("""
            for i in range(4):
                print(f"line {i}")
        """)
        session = await TunnelSession.start(command, endpoint, 9000, drain_timeout=0.1)

        received = []
        async for event in session.events():
            received.append(event.line)
            await asyncio.sleep(0.3)

        assert received == [f"line {i}" for i in range(4)]
        assert await asyncio.wait_for(session.wait(), 10) == 0

    @pytest.mark.asyncio
    async def test_cancel_event_terminates_agent(self, endpoint):
        """Test setting the cancel event stops the agent and closes the stream."""
        command = python_agent("""
            import time
            print("Waiting for connections...", flush=True)
            time.sleep(60)
        """)
        cancel = asyncio.Event()
        session = await TunnelSession.start(command, endpoint, 9000, cancel=cancel)

        events = session.events()
        first = await asyncio.wait_for(events.__anext__(), 10)
        assert first.line == "Waiting for connections..."

        cancel.set()
        assert await collect(events) == []
        await asyncio.wait_for(session.wait(), 10)
        assert not session.running
        assert session.closed

    @pytest.mark.asyncio
    async def test_context_manager_closes_session(self, endpoint):
        """Test leaving the async with block reaps the agent."""
        command = python_agent("""
            import time
            time.sleep(60)
        """)
        async with await TunnelSession.start(command, endpoint, 9000) as session:
            assert session.running

        assert not session.running
        assert session.closed

    @posix_only
    @pytest.mark.asyncio
    async def test_agent_ignoring_sigterm_is_killed(self, endpoint):
        """Test an agent that ignores SIGTERM is killed after the grace period."""
        command = python_agent("""
            import signal, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("ready", flush=True)
            time.sleep(60)
        """)
        session = await TunnelSession.start(command, endpoint, 9000, terminate_timeout=0.5)
        events = session.events()
        await asyncio.wait_for(events.__anext__(), 10)

        returncode = await asyncio.wait_for(session.close(), 15)

        assert returncode == -9
        assert await collect(events) == []

    @pytest.mark.asyncio
    async def test_unconsumed_stream_does_not_block_close(self, endpoint):
        """Test closing works when nobody drains the event stream."""
        command = python_agent("""
            import time
            for i in range(20):
                print(i, flush=True)
            time.sleep(60)
        """)
        session = await TunnelSession.start(command, endpoint, 9000)
        await asyncio.sleep(0.5)

        await asyncio.wait_for(session.close(), 15)
        assert not session.running
        assert session.closed

    @pytest.mark.asyncio
    async def test_event_stream_is_single_use(self, endpoint):
        """Test the event stream cannot be consumed twice."""
        session = await TunnelSession.start(python_agent("print('hi')"), endpoint, 9000)
        await collect(session.events())

        with pytest.raises(RuntimeError, match="only be consumed once"):
            await session.events().__anext__()
        await asyncio.wait_for(session.wait(), 10)

    @pytest.mark.asyncio
    async def test_missing_executable_raises_launch_error(self, endpoint, tmp_path):
        """Test an agent that cannot be started raises LaunchError."""
        missing = str(tmp_path / "no-such-agent")

        with pytest.raises(LaunchError, match="no-such-agent"):
            await TunnelSession.start([missing], endpoint, 9000)


class TestOpenTunnel:
    """Tests for open_tunnel."""

    @pytest.mark.asyncio
    @patch("portalgun.tunnel.TunnelSession.start", new_callable=AsyncMock)
    async def test_builds_agent_command(self, mock_start, endpoint):
        """Test the forwarding agent is invoked with the SSM parameters."""
        cancel = asyncio.Event()

        await open_tunnel(9000, endpoint, cancel=cancel)

        command, passed_endpoint, local_port = mock_start.call_args[0]
        assert command[:6] == ["aws", "ssm", "start-session", "--target", "i-1", "--document-name"]
        assert command[6] == "DeliverooSSMPortForward"
        assert command[7] == "--parameters"
        assert json.loads(command[8]) == {"portNumber": ["51000"], "localPortNumber": ["9000"]}
        assert passed_endpoint == endpoint
        assert local_port == 9000
        assert mock_start.call_args[1]["cancel"] is cancel

    @posix_only
    @pytest.mark.asyncio
    async def test_agent_receives_parameters(self, endpoint, tmp_path):
        """Test a real agent process sees the target and parameter payload."""
        agent_path = tmp_path / "aws"
        agent_path.write_text(f"#!{sys.executable}\nimport json, sys\nprint(json.dumps(sys.argv[1:]))\n")
        agent_path.chmod(0o755)
        agent = ForwardingAgent(executable=str(agent_path), document_name="PortForward", region="eu-west-1")

        session = await open_tunnel(9000, endpoint, agent=agent)
        events = await collect(session.events())

        argv = json.loads(events[0][1])
        assert argv[:7] == ["ssm", "start-session", "--target", "i-1", "--document-name", "PortForward", "--parameters"]
        assert json.loads(argv[7]) == {"portNumber": ["51000"], "localPortNumber": ["9000"]}
        assert argv[8:] == ["--region", "eu-west-1"]
        assert await asyncio.wait_for(session.wait(), 10) == 0
