# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import sleep
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from time import monotonic
from typing import Any, Optional

from kubernetes_asyncio.client import (  # type: ignore
    V1Affinity,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1DeploymentStrategy,
    V1EnvVar,
    V1LabelSelector,
    V1NodeAffinity,
    V1NodeSelector,
    V1NodeSelectorRequirement,
    V1NodeSelectorTerm,
    V1ObjectMeta,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimVolumeSource,
    V1PodSecurityContext,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1SecurityContext,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)

from nfs_provisioner.shared.config import (
    CAS_TYPE_KERNEL,
    CAS_TYPE_LABEL,
    EXPORTS_DIR_PATH,
    NFS_SERVER_LABEL,
    NFS_SERVER_PORT,
    OWNER_PVC_NAME_LABEL,
    OWNER_PVC_NAMESPACE_LABEL,
    OWNER_PVC_UID_LABEL,
    PERSISTENT_VOLUME_LABEL,
    RPC_BIND_PORT,
    ProvisionerConfig,
    backing_resource_name,
)
from nfs_provisioner.shared.errors import NfsServerError
from nfs_provisioner.shared.hooks import HookEvent, Hooks, ResourceKind
from nfs_provisioner.shared.kubernetes import ClusterApi, ObjectApi, ObjectRef
from nfs_provisioner.shared.util import log
from nfs_provisioner.shared.volume_config import VolumeConfig

# ---------------------------------------------------------------------------- #

BOUND_POLL_INTERVAL_SECONDS = 1.0

EXPORTS_VOLUME_NAME = "exports-dir"

SERVER_CONTAINER_NAME = "nfs-server"


@dataclass(frozen=True)
class NfsServerOptions:
    """What the backing resources of one volume are created from."""

    owner: ObjectRef
    """The claim the NFS volume is being provisioned for."""

    capacity: str
    volume_config: VolumeConfig


# ---------------------------------------------------------------------------- #


class NfsServer:
    """
    Creates and deletes the backend PVC, NFS server Deployment, and NFS Service
    that make up the backing resources of a volume.

    Both operations may be retried any number of times after a failure, and
    converge on the same end state.
    """

    __cluster: ClusterApi
    __config: ProvisionerConfig
    __hooks: Hooks

    def __init__(
        self, cluster: ClusterApi, config: ProvisionerConfig, hooks: Hooks
    ) -> None:

        self.__cluster = cluster
        self.__config = config
        self.__hooks = hooks

    @property
    def namespace(self) -> str:
        return self.__config.server_namespace

    async def create_all(
        self, volume_name: str, options: NfsServerOptions
    ) -> str:
        """Ensure all backing resources of the volume exist, and return the
        address at which its NFS export is reachable."""

        name = backing_resource_name(volume_name)

        with _step("create backend PVC", volume_name):
            await self.__create_backend_pvc(volume_name, name, options)

        with _step("create NFS server deployment", volume_name):
            await self.__create_deployment(name, options.volume_config)

        with _step("wait for backend PVC to be bound", volume_name):
            pvc = await self.__wait_until_bound(name)

        with _step("apply hooks to backend PV", volume_name):
            await self.__apply_backend_pv_hooks(pvc, HookEvent.CREATE)

        with _step("create NFS service", volume_name):
            await self.__create_service(name)

        with _step("get NFS server address", volume_name):
            return await self.__get_address(name)

    async def delete_all(self, volume_name: str) -> None:
        """Ensure no backing resources of the volume exist. Resources that are
        already gone are skipped."""

        name = backing_resource_name(volume_name)

        with _step("delete NFS service", volume_name):
            await self.__delete(
                ResourceKind.NFS_SERVICE, self.__cluster.services, name
            )

        with _step("delete NFS server deployment", volume_name):
            await self.__delete(
                ResourceKind.NFS_DEPLOYMENT, self.__cluster.deployments, name
            )

        with _step("apply hooks to backend PV", volume_name):
            pvc = await self.__cluster.persistent_volume_claims.get(
                name, self.namespace
            )
            if pvc is not None:
                await self.__apply_backend_pv_hooks(pvc, HookEvent.DELETE)

        with _step("delete backend PVC", volume_name):
            await self.__delete(
                ResourceKind.BACKEND_PVC,
                self.__cluster.persistent_volume_claims,
                name,
            )

    # ------------------------------------------------------------------------ #
    # Creation

    async def __create_backend_pvc(
        self, volume_name: str, name: str, options: NfsServerOptions
    ) -> None:

        api = self.__cluster.persistent_volume_claims

        if await api.get(name, self.namespace) is not None:
            log(f"Volume {volume_name} already has backend PVC {name}")
            return

        labels = {
            CAS_TYPE_LABEL: CAS_TYPE_KERNEL,
            PERSISTENT_VOLUME_LABEL: volume_name,
            OWNER_PVC_NAME_LABEL: options.owner.name,
            OWNER_PVC_NAMESPACE_LABEL: options.owner.namespace,
            OWNER_PVC_UID_LABEL: options.owner.uid,
        }

        pvc = V1PersistentVolumeClaim(
            api_version="v1",
            kind="PersistentVolumeClaim",
            metadata=V1ObjectMeta(
                name=name, namespace=self.namespace, labels=labels
            ),
            spec=V1PersistentVolumeClaimSpec(
                access_modes=["ReadWriteOnce"],
                resources=V1ResourceRequirements(
                    requests={"storage": options.capacity}
                ),
                storage_class_name=(
                    options.volume_config.backend_storage_class
                ),
            ),
        )

        await self.__create(ResourceKind.BACKEND_PVC, api, pvc)

    async def __create_deployment(
        self, name: str, volume_config: VolumeConfig
    ) -> None:

        api = self.__cluster.deployments

        if await api.get(name, self.namespace) is not None:
            log(f"NFS server deployment {name} already exists")
            return

        selector_labels = {NFS_SERVER_LABEL: name}

        deployment = V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=V1ObjectMeta(
                name=name, namespace=self.namespace, labels=selector_labels
            ),
            spec=V1DeploymentSpec(
                replicas=1,
                selector=V1LabelSelector(match_labels=selector_labels),
                strategy=V1DeploymentStrategy(type="Recreate"),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=selector_labels),
                    spec=self.__server_pod_spec(name, volume_config),
                ),
            ),
        )

        await self.__create(ResourceKind.NFS_DEPLOYMENT, api, deployment)

    def __server_pod_spec(
        self, name: str, volume_config: VolumeConfig
    ) -> V1PodSpec:

        env = {
            "SHARED_DIRECTORY": str(EXPORTS_DIR_PATH),
            "CUSTOM_EXPORTS_CONFIG": volume_config.custom_server_config,
            "NFS_LEASE_TIME": str(volume_config.lease_time),
            "NFS_GRACE_TIME": str(volume_config.grace_time),
        }

        permissions = volume_config.file_permissions

        if permissions is not None:
            if permissions.uid is not None:
                env["FILEPERMISSIONS_UID"] = str(permissions.uid)
            if permissions.gid is not None:
                env["FILEPERMISSIONS_GID"] = str(permissions.gid)
            if permissions.mode is not None:
                env["FILEPERMISSIONS_MODE"] = permissions.mode

        container = V1Container(
            name=SERVER_CONTAINER_NAME,
            image=self.__config.server_image,
            image_pull_policy="IfNotPresent",
            env=[V1EnvVar(name=k, value=v) for (k, v) in env.items()],
            ports=[
                V1ContainerPort(name="nfs", container_port=NFS_SERVER_PORT),
                V1ContainerPort(name="rpcbind", container_port=RPC_BIND_PORT),
            ],
            security_context=V1SecurityContext(privileged=True),
            volume_mounts=[
                V1VolumeMount(
                    name=EXPORTS_VOLUME_NAME, mount_path=str(EXPORTS_DIR_PATH)
                )
            ],
            resources=V1ResourceRequirements(
                requests=dict(volume_config.resource_requests) or None,
                limits=dict(volume_config.resource_limits) or None,
            ),
        )

        return V1PodSpec(
            containers=[container],
            volumes=[
                V1Volume(
                    name=EXPORTS_VOLUME_NAME,
                    persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(
                        claim_name=name
                    ),
                )
            ],
            security_context=V1PodSecurityContext(
                fs_group=volume_config.fs_group_id
            ),
            affinity=self.__server_affinity(),
        )

    def __server_affinity(self) -> Optional[V1Affinity]:

        if not self.__config.node_affinity:
            return None

        expressions = [
            V1NodeSelectorRequirement(**rule.to_match_expression())
            for rule in self.__config.node_affinity
        ]

        return V1Affinity(
            node_affinity=V1NodeAffinity(
                required_during_scheduling_ignored_during_execution=(
                    V1NodeSelector(
                        node_selector_terms=[
                            V1NodeSelectorTerm(match_expressions=expressions)
                        ]
                    )
                )
            )
        )

    async def __create_service(self, name: str) -> None:

        api = self.__cluster.services

        if await api.get(name, self.namespace) is not None:
            log(f"NFS service {name} already exists")
            return

        service = V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(name=name, namespace=self.namespace),
            spec=V1ServiceSpec(
                ports=[
                    V1ServicePort(name="nfs", port=NFS_SERVER_PORT),
                    V1ServicePort(name="rpcbind", port=RPC_BIND_PORT),
                ],
                selector={NFS_SERVER_LABEL: name},
            ),
        )

        await self.__create(ResourceKind.NFS_SERVICE, api, service)

    async def __create(
        self, kind: ResourceKind, api: ObjectApi[Any], body: Any
    ) -> None:

        self.__hooks.apply(kind, HookEvent.CREATE, body)

        if await api.create(body, self.namespace) is None:
            log(f"{api.kind} {body.metadata.name} was created concurrently")
        else:
            log(f"Created {api.kind} {self.namespace}/{body.metadata.name}")

    async def __wait_until_bound(self, name: str) -> V1PersistentVolumeClaim:

        timeout = self.__config.backend_pvc_timeout.total_seconds()
        deadline = monotonic() + timeout

        while True:

            pvc = await self.__cluster.persistent_volume_claims.get(
                name, self.namespace
            )

            if pvc is None:
                raise RuntimeError(
                    f"Backend PVC {self.namespace}/{name} no longer exists"
                )

            if pvc.status is not None and pvc.status.phase == "Bound":
                return pvc

            if monotonic() >= deadline:
                raise TimeoutError(
                    f"Timed out after {timeout:g} seconds waiting for backend"
                    f" PVC {self.namespace}/{name} to be bound"
                )

            await sleep(BOUND_POLL_INTERVAL_SECONDS)

    async def __get_address(self, name: str) -> str:

        if not self.__config.use_cluster_ip:
            return f"{name}.{self.namespace}.svc.cluster.local"

        service = await self.__cluster.services.get(name, self.namespace)

        if service is None or not service.spec.cluster_ip:
            raise RuntimeError(
                f"NFS service {self.namespace}/{name} has no cluster IP"
            )

        return service.spec.cluster_ip

    # ------------------------------------------------------------------------ #
    # Deletion

    async def __delete(
        self, kind: ResourceKind, api: ObjectApi[Any], name: str
    ) -> None:

        if self.__hooks.has_configured_action(kind, HookEvent.DELETE):

            def modifier(obj: object) -> None:
                self.__hooks.apply(kind, HookEvent.DELETE, obj)

            obj = await api.modify(name, self.namespace, modifier)

        else:

            obj = await api.get(name, self.namespace)

        if obj is None:
            return  # object doesn't exist, nothing to do

        if await api.delete(name, self.namespace):
            log(f"Deleted {api.kind} {self.namespace}/{name}")

    async def __apply_backend_pv_hooks(
        self, pvc: V1PersistentVolumeClaim, event: HookEvent
    ) -> None:

        kind = ResourceKind.BACKEND_PV

        if not self.__hooks.has_configured_action(kind, event):
            return

        pv_name = pvc.spec.volume_name if pvc.spec is not None else None

        if not pv_name:
            return  # claim isn't bound to a volume

        def modifier(obj: object) -> None:
            self.__hooks.apply(kind, event, obj)

        await self.__cluster.persistent_volumes.modify(pv_name, None, modifier)


# ---------------------------------------------------------------------------- #


@contextmanager
def _step(description: str, volume_name: str) -> Iterator[None]:
    try:
        yield
    except Exception as e:
        raise NfsServerError(description, volume_name, e) from e


# ---------------------------------------------------------------------------- #
