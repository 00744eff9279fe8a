import asyncio
import dataclasses
import logging
import typing as t

import httpx

from . import hcloud, kube
from .config import settings
from .errors import ObservationError


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen = True)
class NodeStateInfo:
    """
    Snapshot of the state of a single node across the cloud provider, the Talos API
    and the Kubernetes API.

    Every field defaults to the conservative value, i.e. the value used when the
    corresponding source could not be queried.
    """
    #: Indicates whether the cloud provider has a server for the node
    server_exists: bool = False
    #: The status of the server as reported by the cloud provider
    server_status: str = ""
    #: The best known IP for the node
    server_ip: t.Optional[str] = None
    #: The private IP of the server, if known
    server_private_ip: t.Optional[str] = None
    #: Indicates whether the Talos API port accepts connections
    talos_api_reachable: bool = False
    #: Indicates whether Talos is waiting for a machine config
    talos_in_maintenance_mode: bool = False
    #: Indicates whether Talos has a machine config applied
    talos_configured: bool = False
    #: Indicates whether Talos reports the kubelet service as running
    talos_kubelet_running: bool = False
    #: Indicates whether a Kubernetes node object exists for the node
    k8s_node_exists: bool = False
    #: Indicates whether the Kubernetes node has a true Ready condition
    k8s_node_ready: bool = False


def select_ip(server, public_ip = None, private_ip = None):
    """
    Returns the IP to use for a node.

    An address reported live by the cloud provider always wins over previously
    recorded addresses, and public addresses win over private ones.
    """
    if server:
        live_ip = hcloud.server_public_ip(server) or hcloud.server_private_ip(server)
        if live_ip:
            return live_ip
    return public_ip or private_ip


class NodeObserver:
    """
    Observes the state of nodes. Each check is bounded by its own timeout.

    The Talos and Kubernetes checks never raise: an error or a timeout is reported
    as the conservative default. A failed cloud provider lookup raises
    ObservationError instead, as reporting a missing server would fail the node.
    """
    def __init__(self, cloud, talos, kube_client = None):
        self.cloud = cloud
        self.talos = talos
        self.kube_client = kube_client

    async def _lookup_server(self, name):
        try:
            return await asyncio.wait_for(
                self.cloud.get_server(name),
                settings.observer.cloud_timeout
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise ObservationError(name, f"cloud provider lookup failed: {exc}")

    async def _check(self, description, name, coro, timeout):
        """
        Awaits the given check, returning None if it fails or times out.
        """
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError:
            logger.debug("%s for node %s timed out", description, name)
        except Exception as exc:
            logger.debug("%s for node %s failed: %s", description, name, exc)
        return None

    async def _observe_talos(self, name, ip):
        reachable = await self.talos.is_reachable(ip, settings.observer.talos_port_timeout)
        if not reachable:
            return {}
        machine = await self._check(
            "machine state check",
            name,
            self.talos.machine_state(ip),
            settings.observer.talos_api_timeout
        )
        state = { "talos_api_reachable": True }
        if machine is None:
            return state
        state["talos_in_maintenance_mode"] = machine.maintenance
        state["talos_configured"] = machine.configured
        if machine.configured:
            kubelet_running = await self._check(
                "kubelet check",
                name,
                self.talos.kubelet_running(ip),
                settings.observer.talos_api_timeout
            )
            state["talos_kubelet_running"] = bool(kubelet_running)
        return state

    async def _observe_kubernetes(self, name):
        if self.kube_client is None:
            return {}
        node = await self._check(
            "node lookup",
            name,
            kube.fetch_node(self.kube_client, name),
            settings.observer.kubernetes_timeout
        )
        if not node:
            return {}
        return { "k8s_node_exists": True, "k8s_node_ready": kube.node_is_ready(node) }

    async def observe(self, name, public_ip = None, private_ip = None):
        """
        Returns a NodeStateInfo for the named node.

        The given IPs are the last recorded addresses for the node, used when the
        cloud provider does not report an address.
        """
        server = await self._lookup_server(name)
        if not server:
            return NodeStateInfo()
        ip = select_ip(server, public_ip, private_ip)
        state = {
            "server_exists": True,
            "server_status": server.get("status", ""),
            "server_ip": ip,
            "server_private_ip": hcloud.server_private_ip(server) or private_ip,
        }
        if ip:
            state.update(await self._observe_talos(name, ip))
        state.update(await self._observe_kubernetes(name))
        return NodeStateInfo(**state)
