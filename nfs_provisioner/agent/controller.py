# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import Event, Task, create_task
from collections.abc import Mapping
from typing import Any, Optional

import kopf
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    V1ObjectReference,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
)

from nfs_provisioner.shared.config import (
    CONTROLLER_RETRY_DELAY,
    DOMAIN,
    KOPF_FINALIZER,
    PROVISIONED_BY_ANNOTATION,
    PROVISIONER_NAME,
    STORAGE_PROVISIONER_ANNOTATIONS,
    ProvisionerConfig,
)
from nfs_provisioner.shared.garbage_collector import GarbageCollector
from nfs_provisioner.shared.hooks import Hooks, load_hooks
from nfs_provisioner.shared.kubernetes import ClusterApi, deserialize
from nfs_provisioner.shared.provisioner import ProvisionRequest, Provisioner
from nfs_provisioner.shared.tracker import ProvisioningTracker
from nfs_provisioner.shared.volume_config import get_storage_class_name

# ---------------------------------------------------------------------------- #


def run(config: ProvisionerConfig) -> None:

    # load hooks, failing right away if the hook document is invalid

    hooks = load_hooks(config.hook_config_path)

    # create Kubernetes API client object

    api_client = ApiClient()

    # define handlers

    registry = kopf.OperatorRegistry()

    _define_operator_handlers(registry, api_client, config, hooks)

    # run kopf

    kopf.configure()
    kopf.run(registry=registry, standalone=True, clusterwide=True)


# ---------------------------------------------------------------------------- #
# Operator lifecycle


def _define_operator_handlers(
    registry: kopf.OperatorRegistry,
    api_client: ApiClient,
    config: ProvisionerConfig,
    hooks: Hooks,
) -> None:

    cluster = ClusterApi.from_api_client(api_client)
    tracker = ProvisioningTracker()

    provisioner = Provisioner(cluster, config, hooks, tracker)
    garbage_collector = GarbageCollector(cluster, config, tracker, hooks)

    gc_stop = Event()
    gc_task: Optional[Task[None]] = None

    @kopf.on.login(registry=registry)
    async def on_login(**kwargs: Any) -> Optional[kopf.ConnectionInfo]:
        return kopf.login_via_client(**kwargs)

    @kopf.on.startup(registry=registry)
    async def on_startup(
        settings: kopf.OperatorSettings, logger: kopf.Logger, **_: object
    ) -> None:

        nonlocal gc_task

        # use custom finalizer and annotations

        settings.persistence.finalizer = KOPF_FINALIZER

        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
            prefix=DOMAIN
        )

        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
            prefix=DOMAIN
        )

        # don't create events

        settings.posting.enabled = False

        # launch garbage collector

        gc_task = create_task(garbage_collector.run(gc_stop))

        logger.info(f"Serving provisioner {PROVISIONER_NAME}")

    @kopf.on.cleanup(registry=registry)
    async def on_cleanup(**_: object) -> None:

        gc_stop.set()

        if gc_task is not None:
            await gc_task

    _define_provisioning_handlers(registry, api_client, cluster, provisioner)


# ---------------------------------------------------------------------------- #
# Volume provisioning and deletion


def is_claim_for_us(annotations: Mapping[str, str], **_: object) -> bool:
    """Claims of other provisioners are never handled, so kopf doesn't store its
    progress in their annotations."""

    return any(
        annotations.get(key) == PROVISIONER_NAME
        for key in STORAGE_PROVISIONER_ANNOTATIONS
    )


def _define_provisioning_handlers(
    registry: kopf.OperatorRegistry,
    api_client: ApiClient,
    cluster: ClusterApi,
    provisioner: Provisioner,
) -> None:

    retry_delay = CONTROLLER_RETRY_DELAY.total_seconds()

    @kopf.on.resume(
        "persistentvolumeclaims", when=is_claim_for_us, registry=registry
    )
    @kopf.on.create(
        "persistentvolumeclaims", when=is_claim_for_us, registry=registry
    )
    async def provision_volume(
        body: kopf.Body, logger: kopf.Logger, **_: object
    ) -> None:

        pvc = deserialize(api_client, dict(body), "V1PersistentVolumeClaim")
        assert isinstance(pvc, V1PersistentVolumeClaim)

        if pvc.spec.volume_name:
            return  # already bound

        # check if PVC is for us

        sc_name = get_storage_class_name(pvc)

        if not sc_name:
            return

        sc = await cluster.storage_classes.get(sc_name)

        if sc is None or sc.provisioner != PROVISIONER_NAME:
            return

        # check whether volume was already provisioned

        pv_name = f"pvc-{pvc.metadata.uid}"

        if await cluster.persistent_volumes.get(pv_name) is not None:
            return

        # provision volume

        try:
            pv = await provisioner.provision(
                ProvisionRequest(pv_name=pv_name, pvc=pvc, storage_class=sc)
            )
        except Exception as e:
            raise kopf.TemporaryError(str(e), delay=retry_delay) from e

        # bind PV to PVC and create it

        if pv.metadata.annotations is None:
            pv.metadata.annotations = {}

        pv.metadata.annotations[PROVISIONED_BY_ANNOTATION] = PROVISIONER_NAME

        pv.spec.claim_ref = V1ObjectReference(
            api_version="v1",
            kind="PersistentVolumeClaim",
            name=pvc.metadata.name,
            namespace=pvc.metadata.namespace,
            uid=pvc.metadata.uid,
        )

        pv.spec.storage_class_name = sc.metadata.name
        pv.spec.volume_mode = pvc.spec.volume_mode

        await cluster.persistent_volumes.create(pv)

        logger.info(f"Provisioned volume {pv_name}")

    @kopf.on.resume(
        "persistentvolumes",
        field="status.phase",
        value="Released",
        annotations={PROVISIONED_BY_ANNOTATION: PROVISIONER_NAME},
        registry=registry,
    )
    @kopf.on.field(
        "persistentvolumes",
        field="status.phase",
        new="Released",
        annotations={PROVISIONED_BY_ANNOTATION: PROVISIONER_NAME},
        registry=registry,
    )
    async def delete_volume(
        body: kopf.Body, logger: kopf.Logger, **_: object
    ) -> None:

        pv = deserialize(api_client, dict(body), "V1PersistentVolume")
        assert isinstance(pv, V1PersistentVolume)

        if pv.spec.persistent_volume_reclaim_policy != "Delete":
            return

        try:
            await provisioner.delete(pv)
        except Exception as e:
            raise kopf.TemporaryError(str(e), delay=retry_delay) from e

        await cluster.persistent_volumes.delete(pv.metadata.name)

        logger.info(f"Deleted volume {pv.metadata.name}")


# ---------------------------------------------------------------------------- #
