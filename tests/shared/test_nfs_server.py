# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import timedelta
from http import HTTPStatus
from typing import Any

import pytest
from kubernetes_asyncio.client import ApiException  # type: ignore

from fake_cluster import SERVER_NAMESPACE, FakeCluster, FakeStore, make_config
from nfs_provisioner.shared.affinity import parse_node_affinity
from nfs_provisioner.shared.errors import NfsServerError
from nfs_provisioner.shared.hooks import Hooks
from nfs_provisioner.shared.kubernetes import ObjectRef
from nfs_provisioner.shared.nfs_server import NfsServer, NfsServerOptions
from nfs_provisioner.shared.volume_config import FilePermissions, VolumeConfig

# ---------------------------------------------------------------------------- #

OPTIONS = NfsServerOptions(
    owner=ObjectRef(name="data", namespace="default", uid="owner-uid"),
    capacity="5Gi",
    volume_config=VolumeConfig(
        backend_storage_class="standard",
        custom_server_config="/nfsshare *(rw)",
        lease_time=30,
        fs_group_id=120,
        file_permissions=FilePermissions(uid=1000, mode="0755"),
        resource_requests={"cpu": "50m"},
    ),
)

HOOKS = b"""
version: 1.0.0
hooks:
  - name: protect
    event: Create
    action: Add
    backendPVC:
      finalizers: [example.io/protection]
    backendPV:
      annotations:
        example.io/nfs-volume: "yes"
    nfsService:
      finalizers: [example.io/protection]
  - name: unprotect
    event: Delete
    action: Remove
    backendPVC:
      finalizers: [example.io/protection]
    backendPV:
      annotations:
        example.io/nfs-volume: ""
    nfsService:
      finalizers: [example.io/protection]
"""


def _server(
    cluster: FakeCluster, hooks: Hooks = Hooks.empty(), **kwargs: object
) -> NfsServer:
    return NfsServer(cluster.api(), make_config(**kwargs), hooks)


# ---------------------------------------------------------------------------- #


class TestCreateAll:
    @pytest.mark.asyncio
    async def test_creates_resources(self) -> None:

        cluster = FakeCluster()

        address = await _server(cluster).create_all("pvc-1", OPTIONS)

        assert address == f"nfs-pvc-1.{SERVER_NAMESPACE}.svc.cluster.local"

        # backend PVC

        pvc = cluster.persistent_volume_claims.get(
            "nfs-pvc-1", SERVER_NAMESPACE
        )

        assert pvc.metadata.labels == {
            "nfs-provisioner.io/cas-type": "nfs-kernel",
            "persistent-volume": "pvc-1",
            "nfs-provisioner.io/nfs-pvc-name": "data",
            "nfs-provisioner.io/nfs-pvc-namespace": "default",
            "nfs-provisioner.io/nfs-pvc-uid": "owner-uid",
        }
        assert pvc.spec.access_modes == ["ReadWriteOnce"]
        assert pvc.spec.storage_class_name == "standard"
        assert pvc.spec.resources.requests == {"storage": "5Gi"}

        # deployment

        deployment = cluster.deployments.get("nfs-pvc-1", SERVER_NAMESPACE)
        selector = {"nfs-provisioner.io/nfs-server": "nfs-pvc-1"}

        assert deployment.spec.selector.match_labels == selector
        assert deployment.spec.template.metadata.labels == selector
        assert deployment.spec.strategy.type == "Recreate"

        pod_spec = deployment.spec.template.spec
        (container,) = pod_spec.containers

        assert container.security_context.privileged
        assert {e.name: e.value for e in container.env} == {
            "SHARED_DIRECTORY": "/nfsshare",
            "CUSTOM_EXPORTS_CONFIG": "/nfsshare *(rw)",
            "NFS_LEASE_TIME": "30",
            "NFS_GRACE_TIME": "90",
            "FILEPERMISSIONS_UID": "1000",
            "FILEPERMISSIONS_MODE": "0755",
        }
        assert [p.container_port for p in container.ports] == [2049, 111]
        assert container.resources.requests == {"cpu": "50m"}
        assert container.resources.limits is None
        assert container.volume_mounts[0].mount_path == "/nfsshare"
        assert pod_spec.volumes[0].persistent_volume_claim.claim_name == (
            "nfs-pvc-1"
        )
        assert pod_spec.security_context.fs_group == 120
        assert pod_spec.affinity is None

        # service

        service = cluster.services.get("nfs-pvc-1", SERVER_NAMESPACE)

        assert [p.port for p in service.spec.ports] == [2049, 111]
        assert service.spec.selector == selector

    @pytest.mark.asyncio
    async def test_is_idempotent(self) -> None:

        cluster = FakeCluster()
        server = _server(cluster)

        first = await server.create_all("pvc-1", OPTIONS)
        second = await server.create_all("pvc-1", OPTIONS)

        assert first == second

        for store in (
            cluster.persistent_volume_claims,
            cluster.deployments,
            cluster.services,
        ):
            assert store.calls == [("create", "nfs-pvc-1")]

    @pytest.mark.asyncio
    async def test_cluster_ip(self) -> None:

        cluster = FakeCluster()
        server = _server(cluster, use_cluster_ip=True)

        first = await server.create_all("pvc-1", OPTIONS)
        second = await server.create_all("pvc-1", OPTIONS)

        assert first == second == "10.96.0.1"

    @pytest.mark.asyncio
    async def test_node_affinity(self) -> None:

        cluster = FakeCluster()
        server = _server(
            cluster,
            node_affinity=tuple(parse_node_affinity("zone:[a,b],nfs-node")),
        )

        await server.create_all("pvc-1", OPTIONS)

        deployment = cluster.deployments.get("nfs-pvc-1", SERVER_NAMESPACE)
        affinity = deployment.spec.template.spec.affinity.node_affinity
        terms = affinity.required_during_scheduling_ignored_during_execution

        (term,) = terms.node_selector_terms

        assert [
            (e.key, e.operator, e.values) for e in term.match_expressions
        ] == [("zone", "In", ["a", "b"]), ("nfs-node", "Exists", None)]

    @pytest.mark.asyncio
    async def test_applies_create_hooks(self) -> None:

        cluster = FakeCluster()

        await _server(cluster, Hooks.parse(HOOKS)).create_all("pvc-1", OPTIONS)

        pvc = cluster.persistent_volume_claims.get(
            "nfs-pvc-1", SERVER_NAMESPACE
        )
        service = cluster.services.get("nfs-pvc-1", SERVER_NAMESPACE)
        backend_pv = cluster.persistent_volumes.get(pvc.spec.volume_name)

        assert pvc.metadata.finalizers == ["example.io/protection"]
        assert service.metadata.finalizers == ["example.io/protection"]
        assert backend_pv.metadata.annotations == {
            "example.io/nfs-volume": "yes"
        }

    @pytest.mark.asyncio
    async def test_times_out_waiting_for_bound(self) -> None:

        cluster = FakeCluster()
        cluster.auto_bind = False

        server = _server(cluster, backend_pvc_timeout=timedelta(0))

        with pytest.raises(NfsServerError) as e:
            await server.create_all("pvc-1", OPTIONS)

        assert e.value.step == "wait for backend PVC to be bound"
        assert e.value.volume_name == "pvc-1"
        assert isinstance(e.value.__cause__, TimeoutError)

        # no service is created before the backend PVC is bound

        assert not cluster.services.objects

    @pytest.mark.asyncio
    async def test_wraps_errors(self) -> None:

        cluster = FakeCluster()
        cause = ApiException(
            status=HTTPStatus.INTERNAL_SERVER_ERROR, reason="boom"
        )
        cluster.deployments.failures["create"] = cause

        with pytest.raises(NfsServerError) as e:
            await _server(cluster).create_all("pvc-1", OPTIONS)

        assert e.value.step == "create NFS server deployment"
        assert e.value.__cause__ is cause
        assert "pvc-1" in str(e.value)

        # retrying after the failure converges

        del cluster.deployments.failures["create"]

        await _server(cluster).create_all("pvc-1", OPTIONS)

        assert cluster.persistent_volume_claims.calls == [
            ("create", "nfs-pvc-1")
        ]
        assert cluster.services.names() == {"nfs-pvc-1"}


# ---------------------------------------------------------------------------- #


class TestDeleteAll:
    @pytest.mark.asyncio
    async def test_deletes_in_reverse_order(self) -> None:

        cluster = FakeCluster()
        server = _server(cluster)

        await server.create_all("pvc-1", OPTIONS)

        order: list[str] = []

        def record_deletes(store: FakeStore) -> None:

            delete = store.delete

            async def recording_delete(**kwargs: Any) -> None:
                order.append(store.kind)
                await delete(**kwargs)

            store.delete = recording_delete  # type: ignore

        record_deletes(cluster.services)
        record_deletes(cluster.deployments)
        record_deletes(cluster.persistent_volume_claims)

        await _server(cluster).delete_all("pvc-1")

        assert order == ["Service", "Deployment", "PersistentVolumeClaim"]
        assert not cluster.services.objects
        assert not cluster.deployments.objects
        assert not cluster.persistent_volume_claims.objects

    @pytest.mark.asyncio
    async def test_is_idempotent(self) -> None:

        cluster = FakeCluster()
        server = _server(cluster)

        await server.create_all("pvc-1", OPTIONS)
        await server.delete_all("pvc-1")
        await server.delete_all("pvc-1")

        assert cluster.services.calls == [
            ("create", "nfs-pvc-1"),
            ("delete", "nfs-pvc-1"),
        ]

        # nothing to delete at all

        await server.delete_all("pvc-2")

    @pytest.mark.asyncio
    async def test_applies_delete_hooks(self) -> None:

        cluster = FakeCluster()
        server = _server(cluster, Hooks.parse(HOOKS))

        await server.create_all("pvc-1", OPTIONS)

        backend_pv_name = cluster.persistent_volume_claims.get(
            "nfs-pvc-1", SERVER_NAMESPACE
        ).spec.volume_name

        await server.delete_all("pvc-1")

        # hooked objects were updated before being deleted

        pvc_calls = cluster.persistent_volume_claims.calls

        assert ("replace", "nfs-pvc-1") in cluster.services.calls
        assert ("replace", "nfs-pvc-1") in pvc_calls
        assert cluster.deployments.calls == [
            ("create", "nfs-pvc-1"),
            ("delete", "nfs-pvc-1"),
        ]

        backend_pv = cluster.persistent_volumes.get(backend_pv_name)

        assert backend_pv.metadata.annotations == {}

    @pytest.mark.asyncio
    async def test_wraps_errors(self) -> None:

        cluster = FakeCluster()
        server = _server(cluster)

        await server.create_all("pvc-1", OPTIONS)

        cluster.deployments.failures["delete"] = ApiException(
            status=HTTPStatus.FORBIDDEN, reason="Forbidden"
        )

        with pytest.raises(NfsServerError) as e:
            await server.delete_all("pvc-1")

        assert e.value.step == "delete NFS server deployment"

        # the service was deleted before the failure, the backend PVC was not

        assert not cluster.services.objects
        assert cluster.persistent_volume_claims.names() == {"nfs-pvc-1"}


# ---------------------------------------------------------------------------- #
