"""FastAPI app served on the web port while a portal is open."""

import asyncio
from typing import List, Optional, TYPE_CHECKING

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse

from .logging_config import get_logger, log_http_exchange
from .models import Endpoint, SessionStatus, TunnelEvent
from .web import generate_dashboard_html

if TYPE_CHECKING:
    from .portal import Portal

logger = get_logger(__name__)

app = FastAPI(
    title="Portal Gun",
    description="Port forwarding from your machine to an ECS task",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its status and duration."""
    start_time = asyncio.get_event_loop().time()

    response = await call_next(request)

    duration = asyncio.get_event_loop().time() - start_time
    log_http_exchange(logger, request.method, str(request.url.path),
                      response.status_code,
                      duration_ms=round(duration * 1000, 2),
                      client_ip=request.client.host if request.client else "unknown")
    return response


# The portal whose session this app reports on
portal: Optional["Portal"] = None


async def get_portal() -> "Portal":
    """Get the portal attached to the app."""
    if portal is None:
        raise HTTPException(status_code=503, detail="No portal is open")
    return portal


def initialize_portal(new_portal: "Portal") -> None:
    """Attach the portal the app reports on."""
    global portal
    portal = new_portal
    logger.info("Portal attached to web app",
                cluster=new_portal.config.cluster,
                service=new_portal.config.service_identifier)


async def probe_port(host: str, port: int, timeout: float = 1.0) -> bool:
    """Return whether host:port accepts a TCP connection."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


@app.get("/", response_class=HTMLResponse)
async def dashboard():
    """Serve the session dashboard."""
    current = await get_portal()
    html_content = generate_dashboard_html(current.status(), current.recent_events(50))
    return HTMLResponse(content=html_content)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "portal-gun"}


@app.get("/session", response_model=SessionStatus)
async def get_session():
    """Get the state of the tunnel session."""
    current = await get_portal()
    return current.status()


@app.get("/events", response_model=List[TunnelEvent])
async def get_events(limit: Optional[int] = Query(None, ge=0, description="Only the most recent events")):
    """Get the output lines received from the forwarding agent."""
    current = await get_portal()
    return current.recent_events(limit)


@app.get("/endpoints", response_model=List[Endpoint])
async def get_endpoints():
    """Get the endpoint catalog the session was chosen from."""
    current = await get_portal()
    return current.catalog


@app.get("/probe")
async def probe_forward_port():
    """Check whether the forwarded local port accepts connections."""
    current = await get_portal()
    port = current.config.forward_port
    if port is None:
        raise HTTPException(status_code=409, detail="No forward port configured")

    reachable = await probe_port("127.0.0.1", port)
    logger.debug("Probed forwarded port", port=port, reachable=reachable)
    return {"address": f"127.0.0.1:{port}", "reachable": reachable}
