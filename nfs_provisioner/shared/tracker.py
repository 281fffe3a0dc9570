# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock

# ---------------------------------------------------------------------------- #


class ProvisioningTracker:
    """
    Set of names of volumes whose backing resources are currently being created
    or deleted.

    The garbage collector must leave tracked volumes alone.

    All operations, `is_tracked` included, take the same mutual-exclusion lock
    and hold it for a single set operation. There is no separate read lock.
    """

    __lock: Lock
    __names: set[str]

    def __init__(self) -> None:
        self.__lock = Lock()
        self.__names = set()

    def add(self, volume_name: str) -> None:
        with self.__lock:
            self.__names.add(volume_name)

    def delete(self, volume_name: str) -> None:
        """Stop tracking the volume. Does nothing if it isn't tracked."""
        with self.__lock:
            self.__names.discard(volume_name)

    def is_tracked(self, volume_name: str) -> bool:
        with self.__lock:
            return volume_name in self.__names

    @contextmanager
    def tracking(self, volume_name: str) -> Iterator[None]:
        """Track the volume for the duration of the `with` block, however it
        is exited."""

        self.add(volume_name)

        try:
            yield
        finally:
            self.delete(volume_name)


# ---------------------------------------------------------------------------- #
