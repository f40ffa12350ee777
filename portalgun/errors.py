"""Errors raised while resolving an endpoint and running a tunnel."""


class PortalGunError(Exception):
    """Base class for every failure of the resolve-select-tunnel pipeline."""


class NotFoundError(PortalGunError):
    """No running task matches the requested service."""


class ConsistencyError(PortalGunError):
    """A single-entity lookup returned zero or several records."""


class IncompleteDataError(PortalGunError):
    """An entity was found but is missing a required field."""


class SelectionAbortedError(PortalGunError):
    """The user cancelled the endpoint selection."""


class LaunchError(PortalGunError):
    """The forwarding agent could not be started or attached."""


class TransportError(PortalGunError):
    """The inventory API or the forwarding process failed underneath us."""
