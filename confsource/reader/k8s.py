"""Kubernetes ConfigMap and Secret reader.

URI format: ``k8s://{configmap|secret}/{namespace}/{name}[/{key}]``

Example: ``k8s://configmap/default/my-config/config.yaml``

Without a key the resource must hold exactly one entry. Credentials are
located once, when the reader is built: the in-cluster service account is
preferred, then ``$KUBECONFIG``, then ``~/.kube/config``.
"""

import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional
from urllib.parse import unquote

import aiohttp
from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client.exceptions import ApiException
from kubernetes_asyncio.config import ConfigException

from ..errors import (
    AmbiguousKeyError,
    ConstructionError,
    EmptyResourceError,
    InvalidURIError,
    KeyNotFoundError,
    NotFoundError,
    ReaderClosedError,
    ResourceDeletedError,
    SubscriptionSetupError,
    TransportError,
    UnsupportedSchemeError,
)
from ..events import ReadEvent, Subscription
from .base import ConfReader, Producer
from .driver import retry_with_fixed_delay
from .informer import ResourceEventHandler, ResourceInformer, object_name
from .registry import parse_uri
from .settings import K8SSettings

logger = logging.getLogger(__name__)

SCHEME_K8S = "k8s"

RESOURCE_CONFIGMAP = "configmap"
RESOURCE_SECRET = "secret"
RESOURCE_TYPES = (RESOURCE_CONFIGMAP, RESOURCE_SECRET)

SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"
KUBECONFIG_ENV = "KUBECONFIG"


@dataclass(frozen=True)
class KubeCredentials:
    """Where cluster credentials come from."""

    in_cluster: bool
    kubeconfig: Optional[str] = None


def resolve_credentials(
    token_path: str = SERVICE_ACCOUNT_TOKEN, environ: Optional[Mapping[str, str]] = None
) -> KubeCredentials:
    """Probe for in-cluster credentials, then for a kubeconfig file.

    Raises:
        ConstructionError: If neither is available
    """
    if os.path.exists(token_path):
        return KubeCredentials(in_cluster=True)

    environ = os.environ if environ is None else environ
    kubeconfig = environ.get(KUBECONFIG_ENV, "")
    # KUBECONFIG may list several files; the first one holds the context
    kubeconfig = kubeconfig.split(os.pathsep)[0] if kubeconfig else ""
    if not kubeconfig:
        kubeconfig = os.path.join(os.path.expanduser("~"), ".kube", "config")

    if not os.path.exists(kubeconfig):
        raise ConstructionError(
            f"failed to create k8s client: no in-cluster token and kubeconfig {kubeconfig} not found"
        )
    return KubeCredentials(in_cluster=False, kubeconfig=kubeconfig)


def resolve_value(values: Mapping[str, bytes], key: Optional[str], resource: str) -> bytes:
    """Pick the configuration value out of a resource's entries.

    Raises:
        KeyNotFoundError: If ``key`` is given but absent
        EmptyResourceError: If there is no key and no entries
        AmbiguousKeyError: If there is no key and several entries
    """
    if key:
        if key in values:
            return values[key]
        raise KeyNotFoundError(key, resource)

    if not values:
        raise EmptyResourceError(f"{resource} is empty")

    if len(values) == 1:
        return next(iter(values.values()))

    raise AmbiguousKeyError(resource, values.keys())


def configmap_values(configmap: Any) -> dict[str, bytes]:
    values = {k: v.encode("utf-8") for k, v in (configmap.data or {}).items()}
    for k, v in (getattr(configmap, "binary_data", None) or {}).items():
        values.setdefault(k, base64.b64decode(v))
    return values


def secret_values(secret: Any) -> dict[str, bytes]:
    return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}


class K8SReader(ConfReader):
    """Reads one value from a ConfigMap or Secret and follows its changes."""

    def __init__(
        self,
        uri: str,
        api: Optional[Any] = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ):
        super().__init__(uri)

        parsed = parse_uri(uri)
        scheme = parsed.scheme.lower()
        if scheme != SCHEME_K8S:
            raise UnsupportedSchemeError(
                scheme, f"unsupported scheme: {scheme}, expected: {SCHEME_K8S}"
            )

        self.resource_type = parsed.netloc.lower()
        if self.resource_type not in RESOURCE_TYPES:
            raise InvalidURIError(
                f"unsupported resource type: {self.resource_type}, expected: "
                f"{RESOURCE_CONFIGMAP} or {RESOURCE_SECRET}"
            )

        parts = [unquote(part) for part in parsed.path.lstrip("/").split("/")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise InvalidURIError(
                "invalid k8s URI path, expected format: "
                "k8s://{resourceType}/{namespace}/{name}[/{key}]"
            )
        self.namespace = parts[0]
        self.name = parts[1]
        self.key = "/".join(parts[2:]) or None

        self.settings = K8SSettings.from_query(parsed.query)

        self.credentials: Optional[KubeCredentials] = None
        if api is None:
            self.credentials = resolve_credentials()

        self._api = api
        self._api_client = None
        self._api_lock = asyncio.Lock()
        self._watch_factory = watch_factory

    @property
    def resource(self) -> str:
        return f"{self.resource_type} {self.namespace}/{self.name}"

    async def _get_api(self) -> Any:
        if self._api is not None:
            return self._api

        async with self._api_lock:
            if self._api is None:
                configuration = client.Configuration()
                try:
                    if self.credentials.in_cluster:
                        config.load_incluster_config(client_configuration=configuration)
                    else:
                        await config.load_kube_config(
                            config_file=self.credentials.kubeconfig,
                            client_configuration=configuration,
                        )
                except (ConfigException, OSError) as e:
                    raise TransportError(f"failed to load k8s credentials: {e}") from e

                self._api_client = client.ApiClient(configuration)
                self._api = client.CoreV1Api(self._api_client)
                logger.info(
                    "Created k8s client from "
                    + ("in-cluster config" if self.credentials.in_cluster else self.credentials.kubeconfig)
                )
        return self._api

    async def _read(self) -> bytes:
        return await retry_with_fixed_delay(
            self._fetch,
            self.settings.retry_attempts,
            self.settings.retry_delay,
            f"read of {self.resource}",
        )

    async def _fetch(self) -> bytes:
        if self._closed:
            raise ReaderClosedError()

        api = await self._get_api()
        try:
            if self.resource_type == RESOURCE_CONFIGMAP:
                resource = await api.read_namespaced_config_map(
                    self.name, self.namespace, _request_timeout=self.settings.timeout
                )
                values = configmap_values(resource)
            else:
                resource = await api.read_namespaced_secret(
                    self.name, self.namespace, _request_timeout=self.settings.timeout
                )
                values = secret_values(resource)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{self.resource} not found") from e
            raise TransportError(
                f"failed to get {self.resource}: {e.status} {e.reason}"
            ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"failed to get {self.resource}: {e}") from e

        return resolve_value(values, self.key, self.resource)

    def _list_func(self, api: Any) -> Callable:
        if self.resource_type == RESOURCE_CONFIGMAP:
            return api.list_namespaced_config_map
        return api.list_namespaced_secret

    async def _start_subscription(
        self, subscription: Subscription[ReadEvent]
    ) -> Producer:
        try:
            api = await self._get_api()
        except TransportError as e:
            raise SubscriptionSetupError(str(e)) from e

        informer = ResourceInformer(
            self._list_func(api), self.namespace, watch_factory=self._watch_factory
        )
        try:
            await asyncio.wait_for(
                informer.sync(), timeout=self.settings.cache_sync_timeout
            )
        except asyncio.TimeoutError as e:
            raise SubscriptionSetupError(
                f"failed to sync cache for {self.resource_type}s in {self.namespace}: timed out"
            ) from e
        except (ApiException, aiohttp.ClientError, OSError) as e:
            raise SubscriptionSetupError(
                f"failed to sync cache for {self.resource_type}s in {self.namespace}: {e}"
            ) from e

        async def on_change(*objects: Any) -> None:
            if object_name(objects[-1]) != self.name:
                return
            # Give the API server a moment so the read sees the new revision
            await asyncio.sleep(self.settings.settle_delay)
            try:
                data = await self._read()
            except Exception as e:
                await self.emit(subscription, error=e)
            else:
                await self.emit(subscription, data)

        async def on_delete(obj: Any) -> None:
            if object_name(obj) != self.name:
                return
            await self.emit(
                subscription, error=ResourceDeletedError(f"{self.resource} deleted")
            )

        informer.add_handler(
            ResourceEventHandler(on_add=on_change, on_update=on_change, on_delete=on_delete)
        )
        return informer.run()

    async def _release(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
