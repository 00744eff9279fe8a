import asyncio
import base64
import logging

import kopf

from easykube import ApiError, Configuration

from .config import settings


logger = logging.getLogger(__name__)


#: The API versions of the workload kinds that can be waited for
WORKLOAD_API_VERSIONS = {
    "Deployment": "apps/v1",
    "DaemonSet": "apps/v1",
    "StatefulSet": "apps/v1",
    "CronJob": "batch/v1",
}

#: The annotation that marks a mirror pod, i.e. the API copy of a static pod
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"

#: Kinds are applied in this order, with unlisted kinds last
KIND_ORDER = [
    "Namespace",
    "CustomResourceDefinition",
    "PriorityClass",
    "StorageClass",
    "CSIDriver",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Deployment",
    "StatefulSet",
    "Job",
    "CronJob",
]


class WorkloadTimeoutError(Exception):
    """
    Raised when workloads do not become ready in time.
    """
    def __init__(self, pending):
        self.pending = pending
        names = ", ".join(f"{kind} {namespace}/{name}" for kind, namespace, name in pending)
        super().__init__(f"workloads not ready: {names}")


def client_from_kubeconfig(kubeconfig_data):
    """
    Returns an easykube client for the cluster described by the given kubeconfig.
    """
    return (
        Configuration
            .from_kubeconfig_data(kubeconfig_data)
            .async_client(default_field_manager = settings.easykube_field_manager)
    )


async def fetch_object(client, api_version, kind, name, namespace = None):
    """
    Returns the specified object, or None if it does not exist.
    """
    resource = await client.api(api_version).resource(kind)
    try:
        return await resource.fetch(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            return None
        else:
            raise


def node_is_ready(node):
    """
    Returns true if the given node has a true Ready condition.
    """
    conditions = node.get("status", {}).get("conditions", [])
    return any(c["type"] == "Ready" and c["status"] == "True" for c in conditions)


async def fetch_node(client, name):
    """
    Returns the Kubernetes node with the given name, or None.
    """
    return await fetch_object(client, "v1", "nodes", name)


async def cordon_node(client, name):
    """
    Marks the given node as unschedulable.
    """
    nodes = await client.api("v1").resource("nodes")
    return await nodes.patch(name, { "spec": { "unschedulable": True } })


async def delete_node(client, name):
    """
    Deletes the given node object. A node that is already gone is not an error.
    """
    nodes = await client.api("v1").resource("nodes")
    await nodes.delete(name)


async def list_pods(client, node_name):
    """
    Returns the pods in all namespaces that are scheduled on the given node.
    """
    pods = await client.api("v1").resource("pods")
    return [
        pod
        async for pod in pods.list(all_namespaces = True, fields = { "spec.nodeName": node_name })
    ]


def pod_is_evictable(pod):
    """
    Returns true if the given pod should be evicted when draining its node.

    Mirror pods and pods owned by a DaemonSet are left alone, as they would only be
    recreated on the same node.
    """
    metadata = pod.get("metadata", {})
    if MIRROR_POD_ANNOTATION in (metadata.get("annotations") or {}):
        return False
    owners = metadata.get("ownerReferences") or []
    return not any(owner.get("kind") == "DaemonSet" for owner in owners)


async def evict_pod(client, pod):
    """
    Requests the eviction of the given pod, which respects pod disruption budgets.
    """
    name = pod["metadata"]["name"]
    namespace = pod["metadata"]["namespace"]
    await client.post(
        f"/api/v1/namespaces/{namespace}/pods/{name}/eviction",
        json = {
            "apiVersion": "policy/v1",
            "kind": "Eviction",
            "metadata": { "name": name, "namespace": namespace },
        }
    )


async def drain_node(client, name):
    """
    Cordons the given node and evicts its pods.

    Returns false if the node does not exist. Pods that cannot be evicted right now,
    e.g. because of a disruption budget, are logged and left behind.
    """
    if await fetch_node(client, name) is None:
        return False
    logger.info("cordoning node %s", name)
    await cordon_node(client, name)
    for pod in await list_pods(client, name):
        if not pod_is_evictable(pod):
            continue
        try:
            await evict_pod(client, pod)
        except ApiError as exc:
            # 404 means the pod is already gone and 429 means a disruption budget applies
            if exc.status_code not in {404, 429}:
                raise
            logger.warning(
                "unable to evict pod %s/%s from node %s: %s",
                pod["metadata"]["namespace"],
                pod["metadata"]["name"],
                name,
                exc
            )
        else:
            logger.debug(
                "evicted pod %s/%s",
                pod["metadata"]["namespace"],
                pod["metadata"]["name"]
            )
    return True


def workload_ready(kind, obj):
    """
    Returns true if the given workload object reports all of its replicas ready.
    """
    status = obj.get("status", {})
    if kind in {"Deployment", "StatefulSet"}:
        replicas = obj.get("spec", {}).get("replicas", 1)
        return status.get("readyReplicas", 0) >= replicas
    elif kind == "DaemonSet":
        desired = status.get("desiredNumberScheduled", 0)
        return desired > 0 and status.get("numberReady", 0) >= desired
    else:
        # Objects without replicas, e.g. cron jobs, are ready once they exist
        return True


async def is_workload_ready(client, kind, namespace, name):
    obj = await fetch_object(client, WORKLOAD_API_VERSIONS[kind], kind, name, namespace)
    return obj is not None and workload_ready(kind, obj)


async def wait_for_workloads(client, workloads, timeout, interval):
    """
    Waits for all of the given (kind, namespace, name) workloads to become ready.
    """
    pending = list(workloads)

    async def wait():
        nonlocal pending
        while True:
            pending = [
                workload
                for workload in pending
                if not await is_workload_ready(client, *workload)
            ]
            if not pending:
                return
            await asyncio.sleep(interval)

    try:
        await asyncio.wait_for(wait(), timeout)
    except asyncio.TimeoutError:
        raise WorkloadTimeoutError(pending)


async def fetch_secret(client, name, namespace):
    return await fetch_object(client, "v1", "secrets", name, namespace)


def secret_data(secret):
    """
    Returns the decoded data of the given secret.
    """
    return {
        key: base64.b64decode(value).decode()
        for key, value in (secret.get("data") or {}).items()
    }


async def ensure_secret(client, name, namespace, string_data, labels = None, owner = None):
    """
    Ensures that the specified secret exists with the given data, creating it or
    updating it as required.
    """
    secrets = await client.api("v1").resource("secrets")
    existing = await fetch_secret(client, name, namespace)
    if existing is None:
        secret = {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": labels or {},
            },
            "stringData": string_data,
        }
        if owner:
            kopf.adopt(secret, owner)
        return await secrets.create(secret, namespace = namespace)
    else:
        return await secrets.patch(
            name,
            { "metadata": { "labels": labels or {} }, "stringData": string_data },
            namespace = namespace
        )


async def patch_secret_data(client, name, namespace, string_data):
    """
    Adds the given keys to an existing secret, leaving its other keys and metadata
    untouched.
    """
    secrets = await client.api("v1").resource("secrets")
    return await secrets.patch(name, { "stringData": string_data }, namespace = namespace)


def sort_manifests(manifests):
    """
    Returns the given manifests in the order in which they should be applied,
    dropping empty documents.
    """
    def key(manifest):
        kind = manifest.get("kind")
        return KIND_ORDER.index(kind) if kind in KIND_ORDER else len(KIND_ORDER)
    return sorted((m for m in manifests if m), key = key)


async def apply_manifest(client, manifest):
    """
    Creates the given object, updating it instead if it already exists.
    """
    metadata = manifest["metadata"]
    resource = await client.api(manifest["apiVersion"]).resource(manifest["kind"])
    try:
        return await resource.create(manifest, namespace = metadata.get("namespace"))
    except ApiError as exc:
        if exc.status_code != 409:
            raise
    logger.debug("%s %s already exists - updating", manifest["kind"], metadata["name"])
    return await resource.patch(
        metadata["name"],
        manifest,
        namespace = metadata.get("namespace")
    )


async def apply_manifests(client, manifests):
    for manifest in sort_manifests(manifests):
        await apply_manifest(client, manifest)
