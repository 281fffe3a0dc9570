# ---------------------------------------------------------------------------- #

from __future__ import annotations

from dataclasses import dataclass

from kubernetes_asyncio.client import (  # type: ignore
    V1NFSVolumeSource,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeSpec,
    V1StorageClass,
)

from nfs_provisioner.shared.affinity import node_affinity_selector
from nfs_provisioner.shared.config import (
    CAS_TYPE_KERNEL,
    CAS_TYPE_LABEL,
    SUPPORTED_SERVER_TYPE,
    ProvisionerConfig,
)
from nfs_provisioner.shared.errors import (
    NodeAffinityMismatchError,
    ProvisionerError,
    UnsupportedServerTypeError,
    VolumeConfigError,
)
from nfs_provisioner.shared.hooks import HookEvent, Hooks, ResourceKind
from nfs_provisioner.shared.kubernetes import ClusterApi, ObjectRef
from nfs_provisioner.shared.nfs_server import NfsServer, NfsServerOptions
from nfs_provisioner.shared.tracker import ProvisioningTracker
from nfs_provisioner.shared.util import log
from nfs_provisioner.shared.volume_config import (
    default_entries,
    resolve_volume_config,
)

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ProvisionRequest:
    pv_name: str
    pvc: V1PersistentVolumeClaim
    storage_class: V1StorageClass


# ---------------------------------------------------------------------------- #


class Provisioner:
    """
    Entry points for provisioning and deleting NFS volumes.

    Both keep the volume tracked for their whole duration, so that the garbage
    collector leaves its backing resources alone.
    """

    __cluster: ClusterApi
    __config: ProvisionerConfig
    __hooks: Hooks
    __tracker: ProvisioningTracker
    __nfs_server: NfsServer

    def __init__(
        self,
        cluster: ClusterApi,
        config: ProvisionerConfig,
        hooks: Hooks,
        tracker: ProvisioningTracker,
    ) -> None:

        self.__cluster = cluster
        self.__config = config
        self.__hooks = hooks
        self.__tracker = tracker
        self.__nfs_server = NfsServer(cluster, config, hooks)

    async def provision(self, request: ProvisionRequest) -> V1PersistentVolume:
        """Create the backing resources of a new volume and return the NFS PV
        describing it. The PV itself is not created."""

        pvc = request.pvc
        sc = request.storage_class

        with self.__tracker.tracking(request.pv_name):

            for access_mode in pvc.spec.access_modes or []:
                if access_mode != "ReadWriteMany":
                    log(
                        f"Claim {pvc.metadata.namespace}/{pvc.metadata.name}"
                        f" requests non-RWX access mode {access_mode}"
                    )

            # resolve configuration

            volume_config = await resolve_volume_config(
                self.__cluster, pvc, default_entries(self.__config)
            )

            if volume_config.server_type != SUPPORTED_SERVER_TYPE:
                raise UnsupportedServerTypeError(volume_config.server_type)

            await self.__validate_node_affinity()

            requests = (
                pvc.spec.resources.requests if pvc.spec.resources else None
            ) or {}

            if "storage" not in requests:
                raise VolumeConfigError(
                    f"Claim {pvc.metadata.namespace}/{pvc.metadata.name} does"
                    f" not request storage"
                )

            capacity = requests["storage"]

            # create backing resources

            options = NfsServerOptions(
                owner=ObjectRef(
                    name=pvc.metadata.name,
                    namespace=pvc.metadata.namespace,
                    uid=pvc.metadata.uid,
                ),
                capacity=capacity,
                volume_config=volume_config,
            )

            address = await self.__nfs_server.create_all(
                request.pv_name, options
            )

            log(f"Creating NFS volume {request.pv_name} pointing at {address}")

            # build NFS PV

            pv = V1PersistentVolume(
                api_version="v1",
                kind="PersistentVolume",
                metadata=V1ObjectMeta(
                    name=request.pv_name,
                    labels={CAS_TYPE_LABEL: CAS_TYPE_KERNEL},
                ),
                spec=V1PersistentVolumeSpec(
                    persistent_volume_reclaim_policy=(
                        sc.reclaim_policy or "Delete"
                    ),
                    access_modes=pvc.spec.access_modes,
                    capacity={"storage": capacity},
                    mount_options=sc.mount_options,
                    nfs=V1NFSVolumeSource(
                        server=address, path="/", read_only=False
                    ),
                ),
            )

            self.__hooks.apply(ResourceKind.NFS_PV, HookEvent.CREATE, pv)

            return pv

    async def delete(self, pv: V1PersistentVolume) -> None:
        """Delete the backing resources of a volume, unless its reclaim policy
        is Retain. The PV itself is not deleted."""

        name = pv.metadata.name

        with self.__tracker.tracking(name):

            if pv.spec.persistent_volume_reclaim_policy == "Retain":
                log(f"Retained volume {name}")
                return

            try:

                if self.__hooks.has_configured_action(
                    ResourceKind.NFS_PV, HookEvent.DELETE
                ):

                    def modifier(obj: V1PersistentVolume) -> None:
                        self.__hooks.apply(
                            ResourceKind.NFS_PV, HookEvent.DELETE, obj
                        )

                    await self.__cluster.persistent_volumes.modify(
                        name, None, modifier
                    )

                await self.__nfs_server.delete_all(name)

            except Exception as e:
                raise ProvisionerError("failed to delete volume", name) from e

            log(f"Deleted backing resources of volume {name}")

    async def __validate_node_affinity(self) -> None:
        """The set of nodes may have changed since the provisioner started."""

        rules = self.__config.node_affinity

        if not rules:
            return

        selector = node_affinity_selector(rules)

        nodes = await self.__cluster.nodes.list_all(label_selector=selector)

        if not nodes:
            raise NodeAffinityMismatchError(selector)


# ---------------------------------------------------------------------------- #
