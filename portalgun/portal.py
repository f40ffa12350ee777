"""The resolve, select, tunnel and serve pipeline behind the CLI."""

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from .catalog import CatalogBuilder, Inventory
from .errors import TransportError
from .logging_config import get_logger, log_step
from .models import Endpoint, PortalConfig, SessionStatus, TunnelEvent
from .selector import ChoicePrompt, ClickChoicePrompt, EndpointSelector
from .tunnel import TunnelSession, open_tunnel

logger = get_logger(__name__)


class Portal:
    """Opens a portal from a local port to one task of an ECS service.

    The portal owns at most one tunnel session. Errors from any step
    propagate unchanged and stop everything after that step.
    """

    def __init__(self,
                 config: PortalConfig,
                 inventory: Optional[Inventory] = None,
                 prompt: Optional[ChoicePrompt] = None) -> None:
        self.config = config
        if inventory is None:
            from .inventory import EcsInventory
            inventory = EcsInventory(region=config.region)
        self.inventory = inventory
        self.selector = EndpointSelector(prompt or ClickChoicePrompt())
        self.catalog: List[Endpoint] = []
        self.endpoint: Optional[Endpoint] = None
        self.session: Optional[TunnelSession] = None
        self.started_at: Optional[datetime] = None
        self.history: Deque[TunnelEvent] = deque(maxlen=config.history_size)
        self.events_seen = 0
        self._consumer: Optional[asyncio.Task] = None

    def build_catalog(self) -> List[Endpoint]:
        """Build and remember the endpoint catalog of the configured service."""
        self.catalog = CatalogBuilder(self.inventory).build(
            self.config.cluster,
            self.config.hopper_app,
            self.config.hopper_service,
        )
        return self.catalog

    def resolve(self) -> Endpoint:
        """Build the catalog and let the user choose an endpoint from it."""
        with log_step(logger, "resolve",
                      cluster=self.config.cluster,
                      service=self.config.service_identifier) as result:
            self.build_catalog()
            self.endpoint = self.selector.choose(self.catalog)
            result["endpoint"] = self.endpoint.label
        return self.endpoint

    async def open(self, endpoint: Endpoint, cancel: Optional[asyncio.Event] = None) -> TunnelSession:
        """Open the tunnel to endpoint and start recording its events."""
        if self.config.forward_port is None:
            raise ValueError("forward_port is required to open a tunnel")

        self.endpoint = endpoint
        self.session = await open_tunnel(
            self.config.forward_port,
            endpoint,
            agent=self.config.forwarding_agent(),
            cancel=cancel,
            terminate_timeout=self.config.terminate_timeout,
        )
        self.started_at = datetime.now(timezone.utc)
        self._consumer = asyncio.create_task(self._record_events(self.session))
        return self.session

    async def _record_events(self, session: TunnelSession) -> None:
        async for event in session.events():
            self.events_seen += 1
            self.history.append(event)
            if event.channel == "stderr":
                logger.warning("Forwarding agent", channel=event.channel, line=event.line)
            else:
                logger.info("Forwarding agent", channel=event.channel, line=event.line)
        logger.info("Tunnel event stream closed",
                    reason=session.close_reason,
                    running=session.running,
                    returncode=session.returncode)

    async def close(self) -> None:
        """Terminate the tunnel, if one is open, and stop recording."""
        if self.session is not None:
            await self.session.close()
        if self._consumer is not None:
            await self._consumer

    async def run_async(self, endpoint: Endpoint) -> None:
        """Open the tunnel, let it settle, then serve the web surface.

        Serving stops when uvicorn is asked to exit or the agent exits. The
        tunnel is closed on the way out in every case.
        """
        import uvicorn

        from .api import app, initialize_portal

        session = await self.open(endpoint)
        try:
            logger.info("Waiting for the tunnel to settle",
                        seconds=self.config.settle_seconds,
                        forward_port=self.config.forward_port)
            await asyncio.sleep(self.config.settle_seconds)
            if not session.running:
                raise TransportError(
                    f"forwarding agent exited with code {session.returncode} before the tunnel was used"
                )

            initialize_portal(self)
            server = uvicorn.Server(uvicorn.Config(
                app,
                host=self.config.web_host,
                port=self.config.web_port,
                log_level="warning",
            ))
            watcher = asyncio.create_task(self._stop_when_tunnel_ends(server, session))
            logger.info("Serving portal dashboard",
                        url=f"http://{self.config.web_host}:{self.config.web_port}/",
                        forward_port=self.config.forward_port)
            try:
                await server.serve()
            finally:
                watcher.cancel()
        finally:
            await self.close()

    async def _stop_when_tunnel_ends(self, server, session: TunnelSession) -> None:
        await session.process.wait()
        logger.warning("Forwarding agent exited, stopping web server", returncode=session.returncode)
        server.should_exit = True

    def run(self) -> None:
        """Resolve an endpoint, then tunnel and serve until interrupted."""
        if self.config.forward_port is None or self.config.web_port is None:
            raise ValueError("web_port and forward_port are required to open a portal")
        endpoint = self.resolve()
        asyncio.run(self.run_async(endpoint))

    def status(self) -> SessionStatus:
        session = self.session
        return SessionStatus(
            cluster=self.config.cluster,
            service=self.config.service_identifier,
            endpoint=self.endpoint,
            forward_port=self.config.forward_port,
            running=session is not None and session.running,
            stream_closed=session is not None and session.closed,
            close_reason=session.close_reason if session else None,
            returncode=session.returncode if session else None,
            started_at=self.started_at,
            events_seen=self.events_seen,
        )

    def recent_events(self, limit: Optional[int] = None) -> List[TunnelEvent]:
        events = list(self.history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
