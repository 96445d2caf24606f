from __future__ import annotations


class DprError(Exception):
    """Base class for every error raised by the node pool and load balancer."""


class ConfigurationError(DprError):
    """The desired state cannot be acted on until it is changed.

    Missing cluster name, undetermined IP family, malformed version string,
    or a load balancer template that does not render.
    """


class DriverError(DprError):
    """A container operation (create/delete/list/exec/file I/O) failed."""


class ConsistencyError(DprError):
    """Observed container state contradicts what was just written or expected."""


class MissingContainerError(DprError):
    """The operation needs a container that does not exist."""
