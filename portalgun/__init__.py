"""Portal Gun: SSM port forwarding from your machine to an ECS task."""

__version__ = "0.1.0"

# Lazy imports to avoid loading boto3 and FastAPI for --help and --version
__all__ = [
    "Portal",
    "CatalogBuilder",
    "EndpointSelector",
    "TunnelSession",
    "open_tunnel",
    "Endpoint",
    "PortalConfig",
]


def __getattr__(name):
    if name == "Portal":
        from .portal import Portal
        return Portal
    elif name == "CatalogBuilder":
        from .catalog import CatalogBuilder
        return CatalogBuilder
    elif name == "EndpointSelector":
        from .selector import EndpointSelector
        return EndpointSelector
    elif name == "TunnelSession":
        from .tunnel import TunnelSession
        return TunnelSession
    elif name == "open_tunnel":
        from .tunnel import open_tunnel
        return open_tunnel
    elif name == "Endpoint":
        from .models import Endpoint
        return Endpoint
    elif name == "PortalConfig":
        from .models import PortalConfig
        return PortalConfig
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
