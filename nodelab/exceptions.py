"""Custom exceptions for nodelab."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class RegistryError(ManagerError):
    """The inventory file could not be read or written."""


class NotFound(ManagerError):
    """Instance name unknown to the registry."""


class InstanceExists(ManagerError):
    """An instance that must be unique already exists."""


class ResourceExhausted(ManagerError):
    """No free port is left in the allocation pool."""


class InterfaceSetupFailed(ManagerError):
    """A host TAP interface could not be created or brought up."""


class OverlayError(ManagerError):
    """Base class for overlay disk failures."""


class OverlayCreateFailed(OverlayError):
    """qemu-img could not create the overlay."""


class OverlayMissing(OverlayError):
    """The overlay for an instance does not exist on disk."""


class ProcessLaunchFailed(ManagerError):
    """The hypervisor exited non-zero or could not be executed."""


class AlreadyRunning(ManagerError):
    """A hypervisor process is already live for the instance."""


class AlreadyStopped(ManagerError):
    """No hypervisor process is live for the instance."""


class GatewaySyncFailed(ManagerError):
    """The console gateway record could not be created, updated or deleted."""
