# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
from typing import Optional

from kubernetes_asyncio.client import V1PersistentVolumeClaim  # type: ignore

from nfs_provisioner.shared.config import (
    BACKING_RESOURCE_PREFIX,
    CAS_TYPE_KERNEL,
    CAS_TYPE_LABEL,
    OWNER_PVC_NAME_LABEL,
    OWNER_PVC_NAMESPACE_LABEL,
    OWNER_PVC_UID_LABEL,
    ProvisionerConfig,
)
from nfs_provisioner.shared.hooks import Hooks
from nfs_provisioner.shared.kubernetes import ClusterApi, ObjectRef
from nfs_provisioner.shared.nfs_server import NfsServer
from nfs_provisioner.shared.tracker import ProvisioningTracker
from nfs_provisioner.shared.util import log

# ---------------------------------------------------------------------------- #


class GarbageCollector:
    """
    Periodically deletes the backing resources of volumes that no longer have
    an owner claim nor an NFS PV, e.g. because the provisioner was restarted
    while creating them.
    """

    __cluster: ClusterApi
    __config: ProvisionerConfig
    __tracker: ProvisioningTracker
    __nfs_server: NfsServer

    def __init__(
        self,
        cluster: ClusterApi,
        config: ProvisionerConfig,
        tracker: ProvisioningTracker,
        hooks: Hooks,
    ) -> None:

        self.__cluster = cluster
        self.__config = config
        self.__tracker = tracker
        self.__nfs_server = NfsServer(cluster, config, hooks)

    async def run(self, stop: asyncio.Event) -> None:
        """Sweep now and then once every interval, until `stop` is set."""

        interval = self.__config.gc_interval.total_seconds()

        while True:

            log("Running garbage collector for stale NFS resources")
            collected = await self.sweep()
            log(f"Garbage collection completed, removed {len(collected)}")

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

            return

    async def sweep(self) -> list[str]:
        """Returns the names of the volumes whose backing resources were
        deleted."""

        namespace = self.__config.server_namespace

        api = self.__cluster.persistent_volume_claims

        try:
            backend_pvcs = await api.list_all(
                namespace=namespace,
                label_selector=f"{CAS_TYPE_LABEL}={CAS_TYPE_KERNEL}",
            )
        except Exception as e:
            log(f"Failed to list backend PVCs in {namespace}: {e}")
            return []

        collected = []

        for pvc in backend_pvcs:

            try:
                volume_name = await self.__stale_volume_name(pvc)

                # a provision or delete may have started while checking

                if volume_name is not None and not self.__tracker.is_tracked(
                    volume_name
                ):
                    log(f"Deleting stale resources for volume {volume_name}")
                    await self.__nfs_server.delete_all(volume_name)
                    collected.append(volume_name)
            except Exception as e:
                log(
                    f"Failed to collect backend PVC"
                    f" {namespace}/{pvc.metadata.name}: {e}"
                )

        return collected

    async def __stale_volume_name(
        self, pvc: V1PersistentVolumeClaim
    ) -> Optional[str]:

        name: str = pvc.metadata.name

        if not name.startswith(BACKING_RESOURCE_PREFIX):
            return None

        volume_name = name[len(BACKING_RESOURCE_PREFIX) :]

        if not volume_name or self.__tracker.is_tracked(volume_name):
            return None

        # check owner claim

        owner = _get_owner(pvc)

        if owner is None:
            log(f"Backend PVC {name} lacks owner labels, leaving it alone")
            return None

        owner_pvc = await self.__cluster.persistent_volume_claims.get(
            owner.name, owner.namespace
        )

        if owner_pvc is not None and owner_pvc.metadata.uid == owner.uid:
            return None

        # check NFS PV

        if await self.__cluster.persistent_volumes.get(volume_name) is not None:
            return None

        return volume_name


def _get_owner(pvc: V1PersistentVolumeClaim) -> Optional[ObjectRef]:

    labels = pvc.metadata.labels or {}

    try:
        return ObjectRef(
            name=labels[OWNER_PVC_NAME_LABEL],
            namespace=labels[OWNER_PVC_NAMESPACE_LABEL],
            uid=labels[OWNER_PVC_UID_LABEL],
        )
    except KeyError:
        return None


# ---------------------------------------------------------------------------- #
