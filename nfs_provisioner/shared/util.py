# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Iterable, MutableSequence
from datetime import datetime, timezone
from sys import stderr
from typing import TypeVar

# ---------------------------------------------------------------------------- #

T = TypeVar("T")


def append_if_missing(sequence: MutableSequence[T], items: Iterable[T]) -> None:
    for item in items:
        if item not in sequence:
            sequence.append(item)


def remove_all(sequence: MutableSequence[T], items: Iterable[T]) -> None:
    to_remove = set(items)
    sequence[:] = [item for item in sequence if item not in to_remove]


def rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------- #


def log(obj: object) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")
    print(f"\033[36m[{now}]\033[0m {obj}", file=stderr, flush=True)


# ---------------------------------------------------------------------------- #
