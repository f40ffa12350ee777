"""Supervised SSM port forwarding sessions."""

import asyncio
import os
import signal
from typing import AsyncIterator, Dict, List, Optional

from .errors import LaunchError
from .logging_config import get_logger, log_tunnel_event
from .models import Endpoint, ForwardingAgent, TunnelEvent

logger = get_logger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

_POSIX = os.name == "posix"


class TunnelSession:
    """A running forwarding agent and the merged stream of its output.

    Both output channels are read by their own task and pushed onto one
    single-slot queue, so a slow consumer stalls the readers instead of
    buffering without bound. The stream closes exactly once, when:

    * both channels reach end of input,
    * the first non-empty stderr line has been queued (the agent may keep
      running; only cancellation stops it),
    * the agent was reaped and its pipes did not drain in time, or
    * the consumer stops iterating.

    Lines read after the stream closed are dropped so the agent never blocks
    on a full pipe.
    """

    def __init__(self,
                 process: asyncio.subprocess.Process,
                 endpoint: Endpoint,
                 local_port: int,
                 cancel: Optional[asyncio.Event] = None,
                 terminate_timeout: float = 5.0,
                 drain_timeout: float = 2.0) -> None:
        self.process = process
        self.endpoint = endpoint
        self.local_port = local_port
        self.close_reason: Optional[str] = None
        self._cancel = cancel if cancel is not None else asyncio.Event()
        self._terminate_timeout = terminate_timeout
        self._drain_timeout = drain_timeout
        self._queue: "asyncio.Queue[TunnelEvent]" = asyncio.Queue(maxsize=1)
        self._closed = asyncio.Event()
        self._consumed = False
        self._open_channels = 2
        # Loop time each channel started waiting on its pipe
        self._waiting_since: Dict[str, float] = {}
        self._readers = {
            STDOUT: asyncio.create_task(self._read_channel(process.stdout, STDOUT)),
            STDERR: asyncio.create_task(self._read_channel(process.stderr, STDERR)),
        }
        self._worker = asyncio.create_task(self._supervise())

    @classmethod
    async def start(cls,
                    command: List[str],
                    endpoint: Endpoint,
                    local_port: int,
                    cancel: Optional[asyncio.Event] = None,
                    terminate_timeout: float = 5.0,
                    drain_timeout: float = 2.0) -> "TunnelSession":
        """Launch command as the forwarding agent for endpoint.

        Returns as soon as the process runs and its readers are attached.

        Raises:
            LaunchError: The process could not be started or has no pipes.
        """
        logger.debug("Launching forwarding agent", command=command, target=endpoint.ec2_instance_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except (OSError, ValueError) as e:
            logger.error("Failed to launch forwarding agent", executable=command[0], error=str(e))
            raise LaunchError(f"could not start forwarding agent {command[0]}: {e}") from e

        if process.stdout is None or process.stderr is None:
            process.kill()
            await process.wait()
            raise LaunchError("forwarding agent started without output pipes")

        log_tunnel_event(logger, "started",
                         pid=process.pid,
                         target=endpoint.ec2_instance_id,
                         host_port=endpoint.host_port,
                         local_port=local_port)
        return cls(process, endpoint, local_port,
                   cancel=cancel,
                   terminate_timeout=terminate_timeout,
                   drain_timeout=drain_timeout)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def cancel(self) -> None:
        """Ask the session to stop its agent. Returns immediately."""
        self._cancel.set()

    async def close(self) -> Optional[int]:
        """Stop the agent, wait until it is reaped, and return its exit code."""
        self.cancel()
        await self._worker
        return self.returncode

    async def wait(self) -> Optional[int]:
        """Wait for the agent to exit on its own and the session to wind down."""
        await self._worker
        return self.returncode

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def __aenter__(self) -> "TunnelSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def events(self) -> AsyncIterator[TunnelEvent]:
        """Yield agent output lines until the stream closes. Single use."""
        if self._consumed:
            raise RuntimeError("tunnel event stream can only be consumed once")
        self._consumed = True

        try:
            while not (self._closed.is_set() and self._queue.empty()):
                event = await self._next_event()
                if event is not None:
                    yield event
        finally:
            self._close_stream("consumer stopped")
            while not self._queue.empty():
                self._queue.get_nowait()

    async def _next_event(self) -> Optional[TunnelEvent]:
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    async def _read_channel(self, stream: asyncio.StreamReader, channel: str) -> None:
        try:
            while True:
                self._waiting_since[channel] = asyncio.get_running_loop().time()
                try:
                    raw = await stream.readline()
                except ValueError:
                    logger.warning("Dropped an oversized line from the forwarding agent", channel=channel)
                    if channel == STDERR:
                        self._close_stream("diagnostic output")
                    continue
                finally:
                    self._waiting_since.pop(channel, None)
                if not raw:
                    break

                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                if self._closed.is_set():
                    logger.debug("Agent output after stream close", channel=channel, line=line)
                    continue

                await self._queue.put(TunnelEvent(channel=channel, line=line))
                if channel == STDERR:
                    self._close_stream("diagnostic output")
        finally:
            self._open_channels -= 1
            if self._open_channels == 0:
                self._close_stream("end of output")

    async def _supervise(self) -> None:
        exited = asyncio.ensure_future(self.process.wait())
        cancelled = asyncio.ensure_future(self._cancel.wait())
        readers_done = asyncio.gather(*self._readers.values(), return_exceptions=True)
        try:
            await asyncio.wait({exited, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not exited.done():
                await self._terminate()
            returncode = await exited
            log_tunnel_event(logger, "exited",
                             pid=self.process.pid,
                             returncode=returncode,
                             cancelled=self._cancel.is_set())

            if not cancelled.done():
                await self._drain(readers_done, cancelled)
            if not readers_done.done():
                await asyncio.wait({readers_done}, timeout=self._drain_timeout)
            if not readers_done.done():
                logger.warning("Forwarding agent output did not drain, abandoning readers", pid=self.process.pid)
                for reader in self._readers.values():
                    reader.cancel()
                await readers_done
        finally:
            cancelled.cancel()
            self._close_stream("agent exited")

    async def _drain(self, readers_done: asyncio.Future, cancelled: asyncio.Future) -> None:
        """Let the readers finish after the agent exited on its own.

        Readers held up by a slow consumer are waited for. A channel that sat
        on an open pipe with nothing to read for drain_timeout is abandoned:
        children of the agent, such as the session manager plugin, can keep
        the pipes open after the agent itself was reaped.
        """
        loop = asyncio.get_running_loop()
        while not (readers_done.done() or cancelled.done()):
            await asyncio.wait({readers_done, cancelled},
                               timeout=self._drain_timeout,
                               return_when=asyncio.FIRST_COMPLETED)
            now = loop.time()
            stalled = [channel for channel, since in self._waiting_since.items()
                       if now - since >= self._drain_timeout]
            if stalled and not readers_done.done():
                logger.warning("Forwarding agent pipes still open after exit, abandoning them",
                               pid=self.process.pid,
                               channels=stalled)
                for channel in stalled:
                    self._readers[channel].cancel()

    async def _terminate(self) -> None:
        log_tunnel_event(logger, "terminating", pid=self.process.pid)
        self._signal(kill=False)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self._terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning("Forwarding agent ignored SIGTERM, killing it",
                           pid=self.process.pid,
                           timeout=self._terminate_timeout)
            self._signal(kill=True)

    def _signal(self, kill: bool) -> None:
        # The agent leads its own process group; signal the group so the
        # session manager plugin it spawns goes down with it.
        try:
            if _POSIX:
                os.killpg(self.process.pid, signal.SIGKILL if kill else signal.SIGTERM)
            elif kill:
                self.process.kill()
            else:
                self.process.terminate()
        except ProcessLookupError:
            logger.debug("Forwarding agent already gone", pid=self.process.pid)

    def _close_stream(self, reason: str) -> None:
        if self._closed.is_set():
            return
        self.close_reason = reason
        self._closed.set()
        log_tunnel_event(logger, "stream_closed", reason=reason, pid=self.process.pid)


async def open_tunnel(local_port: int,
                      endpoint: Endpoint,
                      agent: Optional[ForwardingAgent] = None,
                      cancel: Optional[asyncio.Event] = None,
                      terminate_timeout: float = 5.0) -> TunnelSession:
    """Forward local_port to the host port of endpoint through SSM.

    Args:
        local_port: Local port the agent listens on.
        endpoint: Endpoint to forward to.
        agent: How to invoke the agent; the AWS CLI defaults otherwise.
        cancel: Setting this event terminates the agent and ends the session.
        terminate_timeout: Grace period between SIGTERM and SIGKILL.

    Raises:
        LaunchError: The agent could not be started.
    """
    agent = agent or ForwardingAgent()
    command = agent.command(endpoint, local_port)
    return await TunnelSession.start(command, endpoint, local_port,
                                     cancel=cancel,
                                     terminate_timeout=terminate_timeout)
