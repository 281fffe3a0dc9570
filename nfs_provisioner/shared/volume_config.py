# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yamale  # type: ignore
import yaml
from kubernetes.utils import parse_quantity  # type: ignore
from kubernetes_asyncio.client import V1PersistentVolumeClaim  # type: ignore

from nfs_provisioner.shared.config import (
    BETA_STORAGE_CLASS_ANNOTATION,
    SUPPORTED_SERVER_TYPE,
    VOLUME_CONFIG_ANNOTATION,
    ProvisionerConfig,
)
from nfs_provisioner.shared.errors import VolumeConfigError
from nfs_provisioner.shared.kubernetes import ClusterApi

# ---------------------------------------------------------------------------- #

KEY_SERVER_TYPE = "NFSServerType"
KEY_BACKEND_STORAGE_CLASS = "BackendStorageClass"
KEY_CUSTOM_SERVER_CONFIG = "CustomServerConfig"
KEY_LEASE_TIME = "LeaseTime"
KEY_GRACE_TIME = "GraceTime"
KEY_FS_GROUP_ID = "FSGID"
KEY_FILE_PERMISSIONS = "FilePermissions"
KEY_RESOURCE_REQUESTS = "NFSServerResourceRequests"
KEY_RESOURCE_LIMITS = "NFSServerResourceLimits"

DEFAULT_LEASE_TIME = 90
DEFAULT_GRACE_TIME = 90

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class FilePermissions:
    """Ownership and mode to apply to the exported directory. Fields left unset
    keep whatever the backend volume provides."""

    uid: Optional[int] = None
    gid: Optional[int] = None
    mode: Optional[str] = None


@dataclass(frozen=True)
class VolumeConfig:
    """The effective configuration of a single volume."""

    server_type: str = SUPPORTED_SERVER_TYPE
    backend_storage_class: Optional[str] = None
    custom_server_config: str = ""
    lease_time: int = DEFAULT_LEASE_TIME
    grace_time: int = DEFAULT_GRACE_TIME
    fs_group_id: Optional[int] = None
    file_permissions: Optional[FilePermissions] = None
    resource_requests: Mapping[str, str] = field(default_factory=dict)
    resource_limits: Mapping[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------- #


def default_entries(config: ProvisionerConfig) -> dict[str, Mapping[str, Any]]:
    """Config entries that apply unless the storage class overrides them."""

    entries: dict[str, Mapping[str, Any]] = {
        KEY_SERVER_TYPE: {
            "name": KEY_SERVER_TYPE,
            "value": config.default_server_type,
        }
    }

    if config.default_backend_storage_class:
        entries[KEY_BACKEND_STORAGE_CLASS] = {
            "name": KEY_BACKEND_STORAGE_CLASS,
            "value": config.default_backend_storage_class,
        }

    return entries


def get_storage_class_name(pvc: V1PersistentVolumeClaim) -> Optional[str]:
    """The beta annotation takes precedence over 'spec.storageClassName', as
    some older claims still refer to their class through it."""

    annotations = pvc.metadata.annotations or {}

    if BETA_STORAGE_CLASS_ANNOTATION in annotations:
        return annotations[BETA_STORAGE_CLASS_ANNOTATION]

    return pvc.spec.storage_class_name


async def resolve_volume_config(
    cluster: ClusterApi,
    pvc: V1PersistentVolumeClaim,
    defaults: Mapping[str, Mapping[str, Any]],
) -> VolumeConfig:
    """
    Merge the configuration declared by the storage class of `pvc` over
    `defaults` and decode the result.

    `defaults` maps config entry names to entries of the same shape as those in
    the storage class annotation, e.g. `{"NFSServerType": {"value": "kernel"}}`.
    """

    sc_name = get_storage_class_name(pvc)

    if not sc_name:
        raise VolumeConfigError(
            f"Claim {pvc.metadata.namespace}/{pvc.metadata.name} has no"
            f" storage class"
        )

    sc = await cluster.storage_classes.get(sc_name)

    if sc is None:
        raise VolumeConfigError(f"Storage class {sc_name!r} does not exist")

    declared = parse_config_entries(
        (sc.metadata.annotations or {}).get(VOLUME_CONFIG_ANNOTATION, "")
    )

    merged = {**defaults, **declared}

    return decode_volume_config(merged)


# ---------------------------------------------------------------------------- #

_ENTRY_SCHEMA = yamale.make_schema(
    content=(Path(__file__).parent / "volume-config-schema.yaml").read_text()
)


def parse_config_entries(text: str) -> dict[str, Mapping[str, Any]]:
    """Parse the storage class config annotation into a mapping from entry name
    to entry. Later entries with the same name replace earlier ones."""

    if not text.strip():
        return {}

    try:
        entries = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise VolumeConfigError(f"Invalid volume config: {e}")

    if entries is None:
        return {}

    if not isinstance(entries, list):
        raise VolumeConfigError("Volume config must be a list of entries")

    result: dict[str, Mapping[str, Any]] = {}

    for entry in entries:

        if not isinstance(entry, dict):
            raise VolumeConfigError(f"Invalid volume config entry {entry!r}")

        try:
            yamale.validate(schema=_ENTRY_SCHEMA, data=[(entry, None)])
        except yamale.YamaleError as e:
            assert len(e.results) == 1
            raise VolumeConfigError(
                f"Invalid volume config entry {entry.get('name')!r}:"
                + "".join(f"\n  {msg}" for msg in e.results[0].errors)
            )

        result[entry["name"]] = entry

    return result


def decode_volume_config(
    entries: Mapping[str, Mapping[str, Any]]
) -> VolumeConfig:

    def value(key: str) -> str:
        entry = entries.get(key) or {}
        raw = entry.get("value")
        return "" if raw is None else str(raw).strip()

    def data(key: str) -> Mapping[str, Any]:
        entry = entries.get(key) or {}
        return entry.get("data") or {}

    backend_storage_class = value(KEY_BACKEND_STORAGE_CLASS)
    fs_group_id = value(KEY_FS_GROUP_ID)

    return VolumeConfig(
        server_type=value(KEY_SERVER_TYPE) or SUPPORTED_SERVER_TYPE,
        backend_storage_class=backend_storage_class or None,
        custom_server_config=value(KEY_CUSTOM_SERVER_CONFIG),
        lease_time=_decode_period(
            KEY_LEASE_TIME, value(KEY_LEASE_TIME), DEFAULT_LEASE_TIME
        ),
        grace_time=_decode_period(
            KEY_GRACE_TIME, value(KEY_GRACE_TIME), DEFAULT_GRACE_TIME
        ),
        fs_group_id=(
            _decode_int(KEY_FS_GROUP_ID, fs_group_id) if fs_group_id else None
        ),
        file_permissions=_decode_file_permissions(data(KEY_FILE_PERMISSIONS)),
        resource_requests=_decode_resources(
            KEY_RESOURCE_REQUESTS,
            value(KEY_RESOURCE_REQUESTS),
            data(KEY_RESOURCE_REQUESTS),
        ),
        resource_limits=_decode_resources(
            KEY_RESOURCE_LIMITS,
            value(KEY_RESOURCE_LIMITS),
            data(KEY_RESOURCE_LIMITS),
        ),
    )


# ---------------------------------------------------------------------------- #


def _decode_int(key: str, text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise VolumeConfigError(f"{key} must be an integer, got {text!r}")


def _decode_period(key: str, text: str, default: int) -> int:

    if not text:
        return default

    seconds = _decode_int(key, text)

    # zero means "not configured"
    return seconds or default


def _decode_file_permissions(
    data: Mapping[str, Any]
) -> Optional[FilePermissions]:

    if not data:
        return None

    uid = str(data.get("UID", "")).strip()
    gid = str(data.get("GID", "")).strip()
    mode = str(data.get("mode", "")).strip()

    if mode:
        try:
            int(mode, 8)
        except ValueError:
            raise VolumeConfigError(
                f"{KEY_FILE_PERMISSIONS} mode must be octal, got {mode!r}"
            )

    return FilePermissions(
        uid=_decode_int(f"{KEY_FILE_PERMISSIONS} UID", uid) if uid else None,
        gid=_decode_int(f"{KEY_FILE_PERMISSIONS} GID", gid) if gid else None,
        mode=mode or None,
    )


def _decode_resources(
    key: str, text: str, data: Mapping[str, Any]
) -> Mapping[str, str]:

    if text:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise VolumeConfigError(f"Invalid {key}: {e}")
        if not isinstance(parsed, dict):
            raise VolumeConfigError(f"{key} must be a mapping, got {text!r}")
        data = parsed

    resources = {}

    for (name, quantity) in data.items():

        try:
            parse_quantity(quantity)
        except ValueError:
            raise VolumeConfigError(
                f"Invalid quantity {quantity!r} for {name} in {key}"
            )

        resources[str(name)] = str(quantity)

    return resources


# ---------------------------------------------------------------------------- #
