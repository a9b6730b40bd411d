"""Error taxonomy for extension management.

Every failure that can end a queued action is an ``ExtensionError``; the
action queue reports it through the status channel and moves on to the next
entry. The neutral "image already up to date" outcome is not an error, see
``dockhand.engine.lifecycle.InstallResult``.
"""


class ExtensionError(Exception):
    """Base class for failures of an extension action."""


class ConnectivityError(ExtensionError):
    """Container engine unreachable, or running on an unsupported host.

    Fatal at startup: reported once and the action queue stays disabled.
    """


class PullError(ExtensionError):
    """No image for this architecture, or the registry pull failed."""


class CreateError(ExtensionError):
    """The engine rejected the container configuration."""


class FilesystemError(ExtensionError):
    """Bind provisioning failed before any container was touched."""


class EngineError(ExtensionError):
    """Any other failed engine call (start, stop, inspect, remove...)."""


class CatalogError(ExtensionError):
    """The extension catalog could not be fetched or parsed."""
