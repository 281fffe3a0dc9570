# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum, unique
from pathlib import Path
from typing import Any

import yamale  # type: ignore
import yaml
from kubernetes_asyncio.client import (  # type: ignore
    V1Deployment,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1Service,
)

from nfs_provisioner.shared.errors import (
    HookDocumentError,
    HookTypeError,
    HookVersionError,
)
from nfs_provisioner.shared.util import (
    append_if_missing,
    remove_all,
    rfc3339_now,
)

# ---------------------------------------------------------------------------- #

HOOK_VERSION = "1.0.0"

CURRENT_TIMESTAMP_TOKEN = "${CURRENT_TIMESTAMP}"
"""Annotation values containing this token get it replaced with the time at
which the hook is applied, in RFC3339 form."""


@unique
class HookEvent(Enum):
    CREATE = "Create"
    DELETE = "Delete"


@unique
class HookAction(Enum):
    ADD = "Add"
    REMOVE = "Remove"


@unique
class ResourceKind(Enum):
    """The kinds of object hooks can be configured for, along with the key of
    their block in the hook document and their Kubernetes model type."""

    BACKEND_PVC = ("backendPVC", V1PersistentVolumeClaim)
    BACKEND_PV = ("backendPV", V1PersistentVolume)
    NFS_SERVICE = ("nfsService", V1Service)
    NFS_PV = ("nfsPV", V1PersistentVolume)
    NFS_DEPLOYMENT = ("nfsDeployment", V1Deployment)

    @property
    def field(self) -> str:
        return self.value[0]

    @property
    def object_type(self) -> type:
        return self.value[1]

    @property
    def kind_name(self) -> str:
        return _kind_name(self.object_type)


def _kind_name(object_type: type) -> str:
    name = object_type.__name__
    return name[2:] if name.startswith("V1") and name[2:3].isupper() else name


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class MetadataHook:
    annotations: Mapping[str, str]
    finalizers: tuple[str, ...]


@dataclass(frozen=True)
class HookConfig:
    name: str
    event: HookEvent
    action: HookAction
    resources: Mapping[ResourceKind, MetadataHook]


# ---------------------------------------------------------------------------- #


class Hooks:
    """
    Declarative annotation and finalizer changes to apply to the objects the
    provisioner manages when volumes are created and deleted.

    The hook document is YAML:

    ```
    version: 1.0.0
    hooks:
      - name: track
        event: Create          # or Delete
        action: Add            # or Remove
        nfsPV:                 # or backendPVC, backendPV, nfsService,
          annotations:         # nfsDeployment
            example.io/created-at: ${CURRENT_TIMESTAMP}
          finalizers:
            - example.io/tracking-protection
    ```
    """

    __SCHEMA = yamale.make_schema(
        content=(Path(__file__).parent / "hook-schema.yaml").read_text()
    )

    @staticmethod
    def parse(data: bytes) -> Hooks:

        try:
            obj = yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise HookDocumentError(f"Invalid hook document: {e}")

        if not isinstance(obj, dict):
            raise HookDocumentError("Hook document must be a mapping")

        # validate document against schema

        try:
            yamale.validate(schema=Hooks.__SCHEMA, data=[(obj, None)])
        except yamale.YamaleError as e:
            assert len(e.results) == 1
            raise HookDocumentError(
                "".join(f"\n  {msg}" for msg in e.results[0].errors)
            )

        # check version

        if obj["version"] != HOOK_VERSION:
            raise HookVersionError(
                f"Unsupported hook version {obj['version']!r}, expected"
                f" {HOOK_VERSION!r}"
            )

        # build hook configs

        configs = [
            _parse_hook_config(entry) for entry in obj.get("hooks") or []
        ]

        return Hooks(configs)

    @staticmethod
    def empty() -> Hooks:
        return Hooks([])

    __configs: Sequence[HookConfig]
    __available: Mapping[HookEvent, frozenset[ResourceKind]]

    def __init__(self, configs: Sequence[HookConfig]) -> None:

        self.__configs = tuple(configs)

        self.__available = {
            event: frozenset(
                kind
                for config in self.__configs
                if config.event is event
                for kind in config.resources
            )
            for event in HookEvent
        }

    @property
    def configs(self) -> Sequence[HookConfig]:
        return self.__configs

    def has_configured_action(
        self, kind: ResourceKind, event: HookEvent
    ) -> bool:
        return kind in self.__available[event]

    def apply(self, kind: ResourceKind, event: HookEvent, obj: Any) -> None:
        """
        Apply every hook configured for the given resource kind and event to
        `obj`, in document order.

        Raises `HookTypeError`, leaving `obj` unmodified, if `obj` is not of the
        model type of `kind`.
        """

        if not self.has_configured_action(kind, event):
            return

        if not isinstance(obj, kind.object_type):
            raise HookTypeError(
                actual=_kind_name(type(obj)), expected=kind.kind_name
            )

        if obj.metadata is None:
            obj.metadata = V1ObjectMeta()

        for config in self.__configs:

            hook = config.resources.get(kind)

            if config.event is not event or hook is None:
                continue

            if config.action is HookAction.ADD:
                _add_entries(obj.metadata, hook)
            else:
                _remove_entries(obj.metadata, hook)


def load_hooks(path: Path) -> Hooks:
    """Returns hooks that do nothing if there is no hook document at `path`."""

    if not path.exists():
        return Hooks.empty()

    return Hooks.parse(path.read_bytes())


# ---------------------------------------------------------------------------- #


def _parse_hook_config(entry: Mapping[str, Any]) -> HookConfig:

    resources = {
        kind: MetadataHook(
            annotations=dict(entry[kind.field].get("annotations") or {}),
            finalizers=tuple(entry[kind.field].get("finalizers") or ()),
        )
        for kind in ResourceKind
        if entry.get(kind.field) is not None
    }

    return HookConfig(
        name=entry["name"],
        event=HookEvent(entry["event"]),
        action=HookAction(entry["action"]),
        resources=resources,
    )


def _add_entries(metadata: V1ObjectMeta, hook: MetadataHook) -> None:

    if hook.annotations:

        if metadata.annotations is None:
            metadata.annotations = {}

        for (key, value) in hook.annotations.items():
            metadata.annotations[key] = value.replace(
                CURRENT_TIMESTAMP_TOKEN, rfc3339_now()
            )

    if hook.finalizers:

        if metadata.finalizers is None:
            metadata.finalizers = []

        append_if_missing(metadata.finalizers, hook.finalizers)


def _remove_entries(metadata: V1ObjectMeta, hook: MetadataHook) -> None:

    if metadata.annotations:
        for key in hook.annotations:
            metadata.annotations.pop(key, None)

    if metadata.finalizers:
        remove_all(metadata.finalizers, hook.finalizers)


# ---------------------------------------------------------------------------- #
