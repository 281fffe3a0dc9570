# ---------------------------------------------------------------------------- #

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from copy import deepcopy
from datetime import timedelta
from http import HTTPStatus
from itertools import count
from types import SimpleNamespace
from typing import Any, Optional
from uuid import uuid4

from kubernetes_asyncio.client import (  # type: ignore
    ApiException,
    V1Node,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimStatus,
    V1PersistentVolumeSpec,
    V1ResourceRequirements,
    V1StorageClass,
)

from nfs_provisioner.shared.config import ProvisionerConfig
from nfs_provisioner.shared.kubernetes import ClusterApi, ObjectApi

# ---------------------------------------------------------------------------- #


class FakeStore:
    """In-memory stand-in for the API server endpoints of one object kind,
    with the same keyword arguments as the kubernetes_asyncio methods."""

    kind: str
    namespaced: bool
    objects: dict[tuple[Optional[str], str], Any]
    failures: dict[str, ApiException]
    calls: list[tuple[str, str]]
    on_create: Optional[Callable[[Any], None]]

    def __init__(self, kind: str, *, namespaced: bool) -> None:
        self.kind = kind
        self.namespaced = namespaced
        self.objects = {}
        self.failures = {}
        self.calls = []
        self.on_create = None
        self.__versions = count(1)

    def api(self) -> ObjectApi[Any]:
        return ObjectApi(
            self.kind,
            read_fn=self.read,
            create_fn=self.create,
            delete_fn=self.delete,
            replace_fn=self.replace,
            list_fn=self.list,
        )

    def get(self, name: str, namespace: Optional[str] = None) -> Any:
        return self.objects.get(self.__key(name, namespace))

    def names(self) -> set[str]:
        return {name for (_, name) in self.objects}

    def put(self, obj: Any) -> None:
        """Store an object directly, bypassing failures and callbacks."""

        obj = deepcopy(obj)

        if obj.metadata.uid is None:
            obj.metadata.uid = str(uuid4())

        obj.metadata.resource_version = str(next(self.__versions))

        key = self.__key(obj.metadata.name, obj.metadata.namespace)
        self.objects[key] = obj

    # ------------------------------------------------------------------------ #

    async def read(self, name: str, namespace: Optional[str] = None) -> Any:

        self.__check_failure("read")

        obj = self.objects.get(self.__key(name, namespace))

        if obj is None:
            raise ApiException(status=HTTPStatus.NOT_FOUND, reason="Not Found")

        return deepcopy(obj)

    async def create(self, body: Any, namespace: Optional[str] = None) -> Any:

        self.__check_failure("create")

        key = self.__key(body.metadata.name, namespace)

        if key in self.objects:
            raise ApiException(status=HTTPStatus.CONFLICT, reason="Conflict")

        obj = deepcopy(body)

        if self.namespaced:
            obj.metadata.namespace = namespace

        self.put(obj)
        self.calls.append(("create", body.metadata.name))

        if self.on_create is not None:
            self.on_create(self.objects[key])

        return deepcopy(self.objects[key])

    async def delete(self, name: str, namespace: Optional[str] = None) -> Any:

        self.__check_failure("delete")

        key = self.__key(name, namespace)

        if key not in self.objects:
            raise ApiException(status=HTTPStatus.NOT_FOUND, reason="Not Found")

        del self.objects[key]
        self.calls.append(("delete", name))

    async def replace(
        self, name: str, body: Any, namespace: Optional[str] = None
    ) -> Any:

        self.__check_failure("replace")

        key = self.__key(name, namespace)
        current = self.objects.get(key)

        if current is None:
            raise ApiException(status=HTTPStatus.NOT_FOUND, reason="Not Found")

        version = current.metadata.resource_version

        if body.metadata.resource_version != version:
            raise ApiException(status=HTTPStatus.CONFLICT, reason="Conflict")

        self.put(body)
        self.calls.append(("replace", name))

        return deepcopy(self.objects[key])

    async def list(
        self,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Any:

        self.__check_failure("list")

        items = [
            deepcopy(obj)
            for ((ns, _), obj) in self.objects.items()
            if (namespace is None or ns == namespace)
            and _matches(obj.metadata.labels or {}, label_selector or "")
        ]

        return SimpleNamespace(
            items=items, metadata=SimpleNamespace(_continue=None)
        )

    # ------------------------------------------------------------------------ #

    def __key(
        self, name: str, namespace: Optional[str]
    ) -> tuple[Optional[str], str]:
        return (namespace if self.namespaced else None, name)

    def __check_failure(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]


def _matches(labels: Mapping[str, str], selector: str) -> bool:

    for term in re.split(r",(?![^(]*\))", selector):

        term = term.strip()

        if not term:
            continue

        match = re.fullmatch(r"(\S+)\s+in\s+\((.*)\)", term)

        if match:
            values = {v.strip() for v in match.group(2).split(",")}
            if labels.get(match.group(1)) not in values:
                return False
        elif "=" in term:
            (key, _, value) = term.partition("=")
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False

    return True


# ---------------------------------------------------------------------------- #


class FakeCluster:
    """
    A `ClusterApi` backed by `FakeStore`s.

    Backend claims created while `auto_bind` is set are immediately bound to a
    new PV, and services are assigned a cluster IP on creation.
    """

    persistent_volume_claims: FakeStore
    persistent_volumes: FakeStore
    deployments: FakeStore
    services: FakeStore
    storage_classes: FakeStore
    nodes: FakeStore

    auto_bind: bool

    def __init__(self) -> None:

        self.persistent_volume_claims = FakeStore(
            "PersistentVolumeClaim", namespaced=True
        )
        self.persistent_volumes = FakeStore(
            "PersistentVolume", namespaced=False
        )
        self.deployments = FakeStore("Deployment", namespaced=True)
        self.services = FakeStore("Service", namespaced=True)
        self.storage_classes = FakeStore("StorageClass", namespaced=False)
        self.nodes = FakeStore("Node", namespaced=False)

        self.auto_bind = True
        self.__ips = count(1)

        self.persistent_volume_claims.on_create = self.__bind
        self.services.on_create = self.__assign_cluster_ip

    def api(self) -> ClusterApi:
        return ClusterApi(
            persistent_volume_claims=self.persistent_volume_claims.api(),
            persistent_volumes=self.persistent_volumes.api(),
            deployments=self.deployments.api(),
            services=self.services.api(),
            storage_classes=self.storage_classes.api(),
            nodes=self.nodes.api(),
        )

    def __bind(self, pvc: V1PersistentVolumeClaim) -> None:

        if not self.auto_bind:
            return

        pv_name = f"backend-{pvc.metadata.name}"

        self.persistent_volumes.put(
            V1PersistentVolume(
                metadata=V1ObjectMeta(name=pv_name),
                spec=V1PersistentVolumeSpec(
                    capacity=pvc.spec.resources.requests
                ),
            )
        )

        pvc.spec.volume_name = pv_name
        pvc.status = V1PersistentVolumeClaimStatus(phase="Bound")

    def __assign_cluster_ip(self, service: Any) -> None:
        service.spec.cluster_ip = f"10.96.0.{next(self.__ips)}"


# ---------------------------------------------------------------------------- #

SERVER_NAMESPACE = "nfs-server-ns"


def make_config(**kwargs: Any) -> ProvisionerConfig:

    kwargs.setdefault("namespace", "nfs-provisioner")
    kwargs.setdefault("server_namespace", SERVER_NAMESPACE)
    kwargs.setdefault("backend_pvc_timeout", timedelta(seconds=5))

    return ProvisionerConfig(**kwargs)


def make_pvc(
    name: str = "data",
    namespace: str = "default",
    *,
    uid: str = "owner-uid",
    storage_class: Optional[str] = "nfs",
    annotations: Optional[Mapping[str, str]] = None,
    storage: Optional[str] = "1Gi",
) -> V1PersistentVolumeClaim:

    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid,
            annotations=dict(annotations) if annotations else None,
        ),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteMany"],
            storage_class_name=storage_class,
            resources=V1ResourceRequirements(
                requests={"storage": storage} if storage else None
            ),
        ),
    )


def make_storage_class(
    name: str = "nfs",
    *,
    config: Optional[str] = None,
    reclaim_policy: str = "Delete",
    mount_options: Optional[list[str]] = None,
) -> V1StorageClass:

    annotations = {"nfs-provisioner.io/config": config} if config else None

    return V1StorageClass(
        metadata=V1ObjectMeta(name=name, annotations=annotations),
        provisioner="nfs-provisioner.io/nfsrwx",
        reclaim_policy=reclaim_policy,
        mount_options=mount_options,
    )


def make_node(name: str, labels: Mapping[str, str]) -> V1Node:
    return V1Node(metadata=V1ObjectMeta(name=name, labels=dict(labels)))


# ---------------------------------------------------------------------------- #
