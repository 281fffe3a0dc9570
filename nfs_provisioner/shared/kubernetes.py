# ---------------------------------------------------------------------------- #

from __future__ import annotations

import json
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from http import HTTPStatus
from types import SimpleNamespace
from typing import Any, Generic, Optional, TypeVar

from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    AppsV1Api,
    CoreV1Api,
    StorageV1Api,
    V1Deployment,
    V1Node,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1Service,
    V1StorageClass,
)

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ObjectRef:
    name: str
    namespace: str
    uid: str


def deserialize(api_client: ApiClient, obj: object, response_type: str) -> Any:
    """Convert a plain object, such as the body kopf hands to handlers, into
    the corresponding kubernetes_asyncio model."""

    return api_client.deserialize(
        response=SimpleNamespace(data=json.dumps(obj)),
        response_type=response_type,
    )


# ---------------------------------------------------------------------------- #

T = TypeVar("T")

ApiFn = Callable[..., Coroutine[Any, Any, Any]]
Modifier = Callable[[T], Any]


class ObjectApi(Generic[T]):
    """
    Get, create, delete, list, and modify objects of a single Kubernetes kind.

    Not-found and already-exists answers from the API server are reported as
    return values; every other API error propagates as `ApiException`.
    """

    kind: str

    __read_fn: ApiFn
    __create_fn: ApiFn
    __delete_fn: ApiFn
    __replace_fn: ApiFn
    __list_fn: ApiFn

    def __init__(
        self,
        kind: str,
        *,
        read_fn: ApiFn,
        create_fn: ApiFn,
        delete_fn: ApiFn,
        replace_fn: ApiFn,
        list_fn: ApiFn,
    ) -> None:

        self.kind = kind

        self.__read_fn = read_fn
        self.__create_fn = create_fn
        self.__delete_fn = delete_fn
        self.__replace_fn = replace_fn
        self.__list_fn = list_fn

    async def get(
        self, name: str, namespace: Optional[str] = None
    ) -> Optional[T]:
        """Returns `None` if the object doesn't exist."""

        try:
            return await self.__read_fn(**_kwargs(name, namespace))
        except ApiException as e:
            if e.status == HTTPStatus.NOT_FOUND:
                return None
            else:
                raise  # some other error occurred, reraise exception

    async def create(
        self, body: T, namespace: Optional[str] = None
    ) -> Optional[T]:
        """Returns the created object, or `None` if an object with the same name
        already exists."""

        kwargs: dict[str, Any] = {"body": body}

        if namespace is not None:
            kwargs["namespace"] = namespace

        try:
            return await self.__create_fn(**kwargs)
        except ApiException as e:
            if e.status == HTTPStatus.CONFLICT:
                return None  # object with same name already exists
            else:
                raise  # failed due to some other reason, reraise exception

    async def delete(self, name: str, namespace: Optional[str] = None) -> bool:
        """Returns `False` if the object didn't exist."""

        try:
            await self.__delete_fn(**_kwargs(name, namespace))
        except ApiException as e:
            if e.status == HTTPStatus.NOT_FOUND:
                return False  # object doesn't exist, success
            else:
                raise  # some other error occurred, reraise exception

        return True

    async def list_all(
        self,
        *,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[T]:

        kwargs: dict[str, Any] = {}

        if namespace is not None:
            kwargs["namespace"] = namespace

        if label_selector is not None:
            kwargs["label_selector"] = label_selector

        objects = await self.__list_fn(**kwargs)

        assert not objects.metadata._continue
        assert type(objects.items) is list

        return objects.items

    async def modify(
        self, name: str, namespace: Optional[str], modifier: Modifier[T]
    ) -> Optional[T]:
        """
        Atomically applies arbitrary modifications to an object. Works by
        reading and replacing the object, retrying if it was modified in
        between.

        Returns the resulting object, or `None` if the object doesn't exist.
        """

        kwargs = _kwargs(name, namespace)

        while True:

            # retrieve object

            obj = await self.get(name, namespace)

            if obj is None:
                return None

            # adjust object

            original_obj_dict = obj.to_dict()  # type: ignore

            result = modifier(obj)

            if hasattr(result, "__await__"):
                await result

            if obj.to_dict() == original_obj_dict:  # type: ignore
                return obj  # no changes necessary

            # replace object

            try:

                return await self.__replace_fn(**kwargs, body=obj)

            except ApiException as e:

                # If we failed with 409 CONFLICT, it means that the object's
                # 'metadata.resourceVersion' field has a different value from
                # when we retrieved it. This means that the object was modified
                # in between our get() and replace_fn() calls, in which case we
                # must re-read the object and retry.

                if e.status == HTTPStatus.NOT_FOUND:
                    return None
                elif e.status != HTTPStatus.CONFLICT:
                    raise  # some unexpected error occurred


def _kwargs(name: str, namespace: Optional[str]) -> dict[str, Any]:

    kwargs = {"name": name}

    if namespace is not None:
        kwargs["namespace"] = namespace

    return kwargs


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ClusterApi:
    """The Kubernetes object kinds the provisioner reads and writes."""

    persistent_volume_claims: ObjectApi[V1PersistentVolumeClaim]
    persistent_volumes: ObjectApi[V1PersistentVolume]
    deployments: ObjectApi[V1Deployment]
    services: ObjectApi[V1Service]
    storage_classes: ObjectApi[V1StorageClass]
    nodes: ObjectApi[V1Node]

    @staticmethod
    def from_api_client(api_client: ApiClient) -> ClusterApi:

        core = CoreV1Api(api_client)
        apps = AppsV1Api(api_client)
        storage = StorageV1Api(api_client)

        return ClusterApi(
            persistent_volume_claims=ObjectApi(
                "PersistentVolumeClaim",
                read_fn=core.read_namespaced_persistent_volume_claim,
                create_fn=core.create_namespaced_persistent_volume_claim,
                delete_fn=core.delete_namespaced_persistent_volume_claim,
                replace_fn=core.replace_namespaced_persistent_volume_claim,
                list_fn=core.list_namespaced_persistent_volume_claim,
            ),
            persistent_volumes=ObjectApi(
                "PersistentVolume",
                read_fn=core.read_persistent_volume,
                create_fn=core.create_persistent_volume,
                delete_fn=core.delete_persistent_volume,
                replace_fn=core.replace_persistent_volume,
                list_fn=core.list_persistent_volume,
            ),
            deployments=ObjectApi(
                "Deployment",
                read_fn=apps.read_namespaced_deployment,
                create_fn=apps.create_namespaced_deployment,
                delete_fn=apps.delete_namespaced_deployment,
                replace_fn=apps.replace_namespaced_deployment,
                list_fn=apps.list_namespaced_deployment,
            ),
            services=ObjectApi(
                "Service",
                read_fn=core.read_namespaced_service,
                create_fn=core.create_namespaced_service,
                delete_fn=core.delete_namespaced_service,
                replace_fn=core.replace_namespaced_service,
                list_fn=core.list_namespaced_service,
            ),
            storage_classes=ObjectApi(
                "StorageClass",
                read_fn=storage.read_storage_class,
                create_fn=storage.create_storage_class,
                delete_fn=storage.delete_storage_class,
                replace_fn=storage.replace_storage_class,
                list_fn=storage.list_storage_class,
            ),
            nodes=ObjectApi(
                "Node",
                read_fn=core.read_node,
                create_fn=core.create_node,
                delete_fn=core.delete_node,
                replace_fn=core.replace_node,
                list_fn=core.list_node,
            ),
        )


# ---------------------------------------------------------------------------- #
