# ---------------------------------------------------------------------------- #

from __future__ import annotations

# ---------------------------------------------------------------------------- #


class VolumeConfigError(ValueError):
    """The declared configuration of a volume is missing or malformed."""


class HookDocumentError(ValueError):
    """The hook document does not conform to its schema."""


class HookVersionError(HookDocumentError):
    """The hook document declares a version this provisioner doesn't
    support."""


class HookTypeError(TypeError):
    """A hook was applied to an object that is not of the resource kind it was
    configured for."""

    actual: str
    expected: str

    def __init__(self, actual: str, expected: str) -> None:
        super().__init__(f"{actual} is not a {expected} type")
        self.actual = actual
        self.expected = expected


class UnsupportedServerTypeError(ValueError):
    def __init__(self, server_type: str) -> None:
        super().__init__(
            f"PV with NFS server of type {server_type!r} is not supported"
        )


class NodeAffinityMismatchError(RuntimeError):
    def __init__(self, selector: str) -> None:
        super().__init__(
            f"No matching nodes found for given affinity rules ({selector})"
        )


class NfsServerError(RuntimeError):
    """A step of creating or deleting the backing resources of a volume
    failed. The cause is available as `__cause__`."""

    step: str
    volume_name: str

    def __init__(self, step: str, volume_name: str, cause: BaseException):
        super().__init__(f"failed to {step} for volume {volume_name}: {cause}")
        self.step = step
        self.volume_name = volume_name


class ProvisionerError(RuntimeError):
    def __init__(self, message: str, volume_name: str) -> None:
        super().__init__(f"{message} {volume_name}")
        self.volume_name = volume_name


# ---------------------------------------------------------------------------- #
