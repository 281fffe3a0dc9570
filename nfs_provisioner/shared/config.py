# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from nfs_provisioner.shared.affinity import (
    NodeAffinityRule,
    parse_node_affinity,
)
from nfs_provisioner.shared.util import log

# ---------------------------------------------------------------------------- #

DOMAIN = "nfs-provisioner.io"
"""Used as a prefix for labels, annotations, and finalizers, and in a few other
places."""

PROVISIONER_NAME = f"{DOMAIN}/nfsrwx"
"""Value of 'StorageClass.provisioner' for classes served by this
provisioner."""

VOLUME_CONFIG_ANNOTATION = f"{DOMAIN}/config"
"""StorageClass annotation holding the declared volume configuration."""

BETA_STORAGE_CLASS_ANNOTATION = "volume.beta.kubernetes.io/storage-class"

PROVISIONED_BY_ANNOTATION = "pv.kubernetes.io/provisioned-by"

STORAGE_PROVISIONER_ANNOTATIONS = (
    "volume.kubernetes.io/storage-provisioner",
    "volume.beta.kubernetes.io/storage-provisioner",
)
"""Claim annotations through which the volume controller names the provisioner
expected to serve a claim."""

CAS_TYPE_LABEL = f"{DOMAIN}/cas-type"
CAS_TYPE_KERNEL = "nfs-kernel"

PERSISTENT_VOLUME_LABEL = "persistent-volume"

OWNER_PVC_NAME_LABEL = f"{DOMAIN}/nfs-pvc-name"
OWNER_PVC_NAMESPACE_LABEL = f"{DOMAIN}/nfs-pvc-namespace"
OWNER_PVC_UID_LABEL = f"{DOMAIN}/nfs-pvc-uid"

NFS_SERVER_LABEL = f"{DOMAIN}/nfs-server"

BACKING_RESOURCE_PREFIX = "nfs-"

NFS_SERVER_PORT = 2049
RPC_BIND_PORT = 111

EXPORTS_DIR_PATH = Path("/nfsshare")
"""Path, in the context of the NFS server container, at which the backend PVC is
mounted and exported."""

SUPPORTED_SERVER_TYPE = "kernel"

DEFAULT_SERVER_IMAGE = "openebs/nfs-server-alpine:0.11.0"

DEFAULT_HOOK_CONFIG_PATH = Path("/etc/nfs-provisioner-hook/config")

DEFAULT_GC_INTERVAL = timedelta(minutes=5)

DEFAULT_BACKEND_PVC_TIMEOUT = timedelta(seconds=60)

CONTROLLER_RETRY_DELAY = timedelta(seconds=10)
"""Amount of time the controller waits before retrying a failed provisioning or
deletion request."""

KOPF_FINALIZER = f"{DOMAIN}/kopf"
"""Finalizer for kopf to use instead of its default one."""

# ---------------------------------------------------------------------------- #


def backing_resource_name(volume_name: str) -> str:
    """Name shared by the backend PVC, NFS server Deployment, and NFS Service of
    the given volume."""
    return f"{BACKING_RESOURCE_PREFIX}{volume_name}"


def is_truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "y", "yes", "true"}


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ProvisionerConfig:
    """Process-wide settings, loaded once at startup and handed to every
    component that needs them."""

    namespace: str
    server_namespace: str
    default_server_type: str = SUPPORTED_SERVER_TYPE
    default_backend_storage_class: str = ""
    use_cluster_ip: bool = False
    server_image: str = DEFAULT_SERVER_IMAGE
    node_affinity: tuple[NodeAffinityRule, ...] = ()
    hook_config_path: Path = DEFAULT_HOOK_CONFIG_PATH
    gc_interval: timedelta = DEFAULT_GC_INTERVAL
    backend_pvc_timeout: timedelta = DEFAULT_BACKEND_PVC_TIMEOUT

    @staticmethod
    def from_environment(environ: Mapping[str, str]) -> ProvisionerConfig:

        def get(key: str, default: str = "") -> str:
            return environ.get(key, default).strip() or default

        namespace = get("NFS_PROVISIONER_NAMESPACE")

        if not namespace:
            raise ValueError(
                "Environment variable 'NFS_PROVISIONER_NAMESPACE' must be set"
            )

        return ProvisionerConfig(
            namespace=namespace,
            server_namespace=get("NFS_SERVER_NAMESPACE", namespace),
            default_server_type=get(
                "NFS_SERVER_TYPE", SUPPORTED_SERVER_TYPE
            ),
            default_backend_storage_class=get("NFS_BACKEND_STORAGE_CLASS"),
            use_cluster_ip=is_truthy(get("NFS_SERVER_USE_CLUSTERIP")),
            server_image=get("NFS_SERVER_IMAGE", DEFAULT_SERVER_IMAGE),
            node_affinity=tuple(
                parse_node_affinity(get("NFS_SERVER_NODE_AFFINITY"))
            ),
            hook_config_path=Path(
                get("NFS_HOOK_CONFIG_PATH", str(DEFAULT_HOOK_CONFIG_PATH))
            ),
            gc_interval=_parse_seconds(
                environ, "NFS_GC_INTERVAL", DEFAULT_GC_INTERVAL
            ),
            backend_pvc_timeout=_parse_seconds(
                environ, "NFS_BACKEND_PVC_TIMEOUT", DEFAULT_BACKEND_PVC_TIMEOUT
            ),
        )


def _parse_seconds(
    environ: Mapping[str, str], key: str, default: timedelta
) -> timedelta:

    value = environ.get(key, "").strip()

    if not value:
        return default

    try:
        seconds = int(value)
    except ValueError:
        seconds = 0

    if seconds <= 0:
        log(
            f"Invalid value {value!r} for {key}, using default of"
            f" {int(default.total_seconds())} seconds"
        )
        return default

    return timedelta(seconds=seconds)


# ---------------------------------------------------------------------------- #
