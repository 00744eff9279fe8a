import asyncio
import dataclasses
import datetime as dt
import logging

from . import kube, resolver, status, talos
from .config import settings
from .errors import ConfigurationError
from .models.v1alpha1 import (
    NodePhase,
    NodeRole,
    ProvisioningPhase,
    UpgradePhase,
    UpgradeStatus,
)
from .observer import NodeObserver
from .template import default_loader
from .upgrade import UpgradeError, UpgradeNode, UpgradeOptions, UpgradeOrchestrator
from .utils import generate_ssh_public_key


logger = logging.getLogger(__name__)


#: The port of the Kubernetes API
KUBERNETES_API_PORT = 6443

#: The key in the kubeconfig secret that contains the kubeconfig
KUBECONFIG_KEY = "value"

#: Keys in the credentials secret
HCLOUD_TOKEN_KEY = "hcloud-token"
TALOS_SECRETS_KEY = "talos-secrets"
TALOSCONFIG_KEY = "talosconfig"

#: The role names used by Talos for machine configs
TALOS_ROLES = {
    NodeRole.CONTROL_PLANE: "controlplane",
    NodeRole.WORKER: "worker",
}


class ReconcileError(Exception):
    """
    Raised when a reconcile pass could not make progress.

    The status of the cluster is finalised before this is raised, so it can still
    be saved.
    """


@dataclasses.dataclass(frozen = True)
class Credentials:
    """
    The credentials for a cluster.
    """
    hcloud_token: str
    talos_secrets: str
    talosconfig: str


async def ensure_credentials(client, cluster, talos_client):
    """
    Loads the credentials for the cluster from the credentials secret, generating
    and storing the Talos secrets and talosconfig if they are not present.

    Raises ConfigurationError if the secret or the cloud provider token is missing.
    """
    name = cluster.spec.credentials_secret_name
    namespace = cluster.metadata.namespace
    secret = await kube.fetch_secret(client, name, namespace)
    if secret is None:
        raise ConfigurationError(f"credentials secret {name} does not exist")
    data = kube.secret_data(secret)
    if not data.get(HCLOUD_TOKEN_KEY):
        raise ConfigurationError(f"credentials secret {name} has no {HCLOUD_TOKEN_KEY} key")
    generated = {}
    if not data.get(TALOS_SECRETS_KEY):
        logger.info("generating Talos secrets for cluster %s", cluster.metadata.name)
        generated[TALOS_SECRETS_KEY] = await talos_client.generate_secrets()
    if not data.get(TALOSCONFIG_KEY):
        # The client config only depends on the secrets, as nodes are always targeted
        # explicitly, so a placeholder endpoint is fine if the real one is unknown
        generated[TALOSCONFIG_KEY] = await talos_client.generate_talosconfig(
            cluster.metadata.name,
            cluster.status.control_plane_endpoint or f"https://127.0.0.1:{KUBERNETES_API_PORT}",
            secrets = generated.get(TALOS_SECRETS_KEY) or data[TALOS_SECRETS_KEY],
            kubernetes_version = cluster.spec.kubernetes.version,
            talos_version = cluster.spec.talos.version
        )
    if generated:
        await kube.patch_secret_data(client, name, namespace, generated)
        data.update(generated)
    return Credentials(data[HCLOUD_TOKEN_KEY], data[TALOS_SECRETS_KEY], data[TALOSCONFIG_KEY])


async def load_backup_config(client, cluster):
    """
    Returns the S3 configuration for etcd backups, or an empty dict if backups are
    not enabled.
    """
    if not cluster.spec.backup.enabled:
        return {}
    name = cluster.spec.backup.s3_secret_name
    secret = await kube.fetch_secret(client, name, cluster.metadata.namespace)
    if secret is None:
        raise ConfigurationError(f"backup secret {name} does not exist")
    return kube.secret_data(secret)


def kubeconfig_secret_name(cluster):
    return f"{cluster.metadata.name}-kubeconfig"


def node_name(cluster, role, index):
    """
    Returns the name of the node in the given slot.
    """
    return f"{cluster.metadata.name}-{NodeRole(role).value}-{index}"


def planned_nodes(cluster):
    """
    Returns (role, name) for each node that the spec asks for.
    """
    return [
        (role, node_name(cluster, role, index))
        for role, count in (
            (NodeRole.CONTROL_PLANE, cluster.spec.control_planes.count),
            (NodeRole.WORKER, cluster.spec.workers.count),
        )
        for index in range(1, count + 1)
    ]


def cloud_labels(cluster, **extra):
    """
    Returns the labels for cloud resources that belong to the cluster.
    """
    return { "cluster": cluster.metadata.name, "managed-by": "k8zner", **extra }


def firewall_rules(cluster):
    sources = [str(cidr) for cidr in cluster.spec.firewall.allowed_api_sources]
    return [
        {
            "description": "Kubernetes API",
            "direction": "in",
            "protocol": "tcp",
            "port": str(KUBERNETES_API_PORT),
            "source_ips": sources,
        },
        {
            "description": "Talos API",
            "direction": "in",
            "protocol": "tcp",
            "port": str(settings.talos.api_port),
            "source_ips": sources,
        },
        {
            "description": "ICMP",
            "direction": "in",
            "protocol": "icmp",
            "source_ips": ["0.0.0.0/0", "::/0"],
        },
    ]


def snapshot_labels(cluster):
    labels = {
        "os": "talos",
        "talos-version": f"v{talos.normalise_version(cluster.spec.talos.version)}",
    }
    if cluster.spec.talos.schematic_id:
        labels["talos-schematic"] = cluster.spec.talos.schematic_id
    return labels


def _truthy(value):
    return str(value).lower() in {"1", "true", "yes"}


def pending_upgrade(cluster, annotations = None):
    """
    Returns the options for the upgrade that the cluster needs, or None.

    An upgrade is needed when a complete cluster runs different versions to those in
    the spec. A target that previously failed is not retried, and neither is a
    planned target while the dry run annotation is still present.
    """
    annotations = annotations or {}
    if ProvisioningPhase(cluster.status.provisioning_phase) != ProvisioningPhase.COMPLETE:
        return None
    talos_version = talos.normalise_version(cluster.spec.talos.version)
    kubernetes_version = talos.normalise_version(cluster.spec.kubernetes.version)
    if (
        cluster.status.talos_version == talos_version and
        cluster.status.kubernetes_version == kubernetes_version
    ):
        return None
    dry_run = _truthy(annotations.get(f"{settings.annotation_prefix}/upgrade-dry-run", ""))
    previous = cluster.status.upgrade
    if (
        previous is not None and
        previous.talos_version == talos_version and
        previous.kubernetes_version == kubernetes_version
    ):
        phase = UpgradePhase(previous.phase)
        if phase == UpgradePhase.FAILED or (phase == UpgradePhase.PLANNED and dry_run):
            return None
    return UpgradeOptions(
        talos_version = talos_version,
        kubernetes_version = (
            kubernetes_version
            if cluster.status.kubernetes_version != kubernetes_version
            else None
        ),
        schematic_id = cluster.spec.talos.schematic_id,
        stage = cluster.spec.talos.upgrade_stage,
        force = cluster.spec.talos.upgrade_force,
        dry_run = dry_run,
        skip_health_check = _truthy(
            annotations.get(f"{settings.annotation_prefix}/skip-health-check", "")
        )
    )


class Reconciler:
    """
    Reconciles a cluster against the cloud provider, Talos and Kubernetes.

    Each call to reconcile makes one pass, observing every node and driving the
    current macro-phase forward. The status of the cluster model is updated in place
    and it is up to the caller to save it.
    """
    def __init__(
        self,
        cluster,
        *,
        cloud,
        talos_client,
        credentials,
        management_client = None,
        kube_client = None,
        observer = None,
        addons = None,
        save = None
    ):
        self.cluster = cluster
        self.cloud = cloud
        self.talos = talos_client
        self.credentials = credentials
        self.management_client = management_client
        self.kube_client = kube_client
        self.observer = observer or NodeObserver(cloud, talos_client, kube_client)
        self.addons = addons
        # Awaited with the cluster when the status must be persisted mid-pass
        self.save = save
        # The observations from the current pass, indexed by node name
        self.observations = {}
        self._machine_configs = {}

    @property
    def name(self):
        return self.cluster.metadata.name

    @property
    def phase(self):
        return ProvisioningPhase(self.cluster.status.provisioning_phase)

    def _node_ip(self, node):
        info = self.observations.get(node.name)
        if info and info.server_ip:
            return info.server_ip
        return node.public_ip or node.private_ip

    async def _ensure_servers(self):
        """
        Creates servers for planned nodes that are not yet in the status.
        """
        infra = self.cluster.status.infrastructure
        for role, name in planned_nodes(self.cluster):
            if status.find_node(self.cluster, role, name):
                continue
            kwargs = dict(
                labels = cloud_labels(self.cluster, role = NodeRole(role).value),
                ssh_keys = [infra.ssh_key_id] if infra.ssh_key_id else [],
                networks = [infra.network_id] if infra.network_id else [],
            )
            if role == NodeRole.CONTROL_PLANE and infra.placement_group_id:
                kwargs["placement_group"] = infra.placement_group_id
            size = (
                self.cluster.spec.control_planes.size
                if role == NodeRole.CONTROL_PLANE
                else self.cluster.spec.workers.size
            )
            server = await self.cloud.ensure_server(
                name,
                size,
                infra.snapshot_id,
                self.cluster.spec.region,
                **kwargs
            )
            status.update_node_phase(
                self.cluster,
                role,
                name,
                NodePhase.CREATING_SERVER,
                "server requested from cloud provider",
                server_id = server["id"]
            )

    async def _verify_nodes(self):
        """
        Observes every node that is not in a terminal phase and records the result.

        The observations are made concurrently, then applied to the status one by one.
        """
        targets = [
            (role, node)
            for role, node in status.iter_nodes(self.cluster)
            if NodePhase(node.phase) not in status.TERMINAL_NODE_PHASES
        ]
        results = await asyncio.gather(
            *(
                self.observer.observe(node.name, node.public_ip, node.private_ip)
                for _, node in targets
            ),
            return_exceptions = True
        )
        for (role, node), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("failed to observe node %s: %s", node.name, result)
                status.record_error(self.cluster, f"node/{node.name}", result)
                continue
            elif isinstance(result, BaseException):
                raise result
            self.observations[node.name] = result
            observed, reason = resolver.resolve(result)
            next_phase = status.next_node_phase(node.phase, observed)
            if next_phase is None:
                logger.debug(
                    "holding node %s at %s (observed %s)",
                    node.name,
                    NodePhase(node.phase).value,
                    observed.value
                )
                next_phase, reason = NodePhase(node.phase), node.reason
            elif next_phase == NodePhase.UNHEALTHY:
                reason = f"node is no longer ready: {reason}"
            public_ip = result.server_ip if result.server_ip != result.server_private_ip else None
            status.update_node_phase(
                self.cluster,
                role,
                node.name,
                next_phase,
                reason,
                public_ip = public_ip,
                private_ip = result.server_private_ip
            )

    def _check_stuck_nodes(self):
        for role, name in status.check_stuck_nodes(self.cluster):
            node = status.find_node(self.cluster, role, name)
            status.record_error(self.cluster, f"node/{name}", node.reason)

    async def _delete_node(self, role, node, reason):
        """
        Deletes the server for the node, after draining a worker and deleting the
        Kubernetes node object.
        """
        if self.kube_client is not None:
            if NodeRole(role) == NodeRole.WORKER:
                await kube.drain_node(self.kube_client, node.name)
            await kube.delete_node(self.kube_client, node.name)
        server = await self.cloud.get_server(node.name)
        if server:
            await self.cloud.delete_server(server["id"])
        status.update_node_phase(
            self.cluster,
            role,
            node.name,
            NodePhase.DELETING_SERVER,
            reason
        )

    async def _remove_etcd_member(self, node, healthy):
        """
        Removes the etcd member for the node, using one of the given healthy control
        planes. Members are matched by hostname or by peer address.
        """
        ip = self._node_ip(healthy[0])
        for member in await self.talos.etcd_members(ip):
            same_address = node.private_ip and any(
                f"//{node.private_ip}:" in url
                for url in member["peer_urls"]
            )
            if member["hostname"] == node.name or same_address:
                logger.info("removing etcd member %s for node %s", member["id"], node.name)
                await self.talos.remove_etcd_member(ip, member["id"])
                return
        logger.info("node %s is not an etcd member", node.name)

    async def _replace_control_plane(self, node):
        """
        Replaces a failed control plane node, unless that would risk etcd quorum.

        Before etcd is bootstrapped there are no members to protect.
        """
        if self.cluster.status.bootstrapped:
            healthy = [
                n
                for n in self.cluster.status.control_planes.nodes
                if n.name != node.name and NodePhase(n.phase) == NodePhase.READY
            ]
            required = status.quorum(self.cluster.spec.control_planes.count)
            if len(healthy) < required:
                message = (
                    f"cannot replace failed control plane {node.name}: "
                    f"{len(healthy)} control planes are ready and {required} are "
                    "required for etcd quorum"
                )
                logger.warning(message)
                status.record_error(self.cluster, f"node/{node.name}", message)
                return
            await self._remove_etcd_member(node, healthy)
        await self._delete_node(
            NodeRole.CONTROL_PLANE,
            node,
            f"replacing failed node ({node.reason})"
        )

    async def _remove_nodes(self):
        """
        Deletes the servers of failed nodes and surplus workers, and forgets nodes
        whose servers are gone so that their slots are planned again.
        """
        planned = { name for _, name in planned_nodes(self.cluster) }
        for role, node in list(status.iter_nodes(self.cluster)):
            phase = NodePhase(node.phase)
            if phase == NodePhase.DELETING_SERVER:
                if await self.cloud.get_server(node.name) is None:
                    logger.info("server for node %s is gone", node.name)
                    status.remove_node(self.cluster, role, node.name)
            elif role == NodeRole.CONTROL_PLANE:
                if phase == NodePhase.FAILED and settings.replace_failed_control_planes:
                    await self._replace_control_plane(node)
            elif node.name not in planned:
                await self._delete_node(NodeRole.WORKER, node, "node is no longer required")
            elif phase == NodePhase.FAILED and settings.replace_failed_workers:
                await self._delete_node(
                    NodeRole.WORKER,
                    node,
                    f"replacing failed node ({node.reason})"
                )

    def _planned_node_statuses(self):
        return [
            status.find_node(self.cluster, role, name)
            for role, name in planned_nodes(self.cluster)
        ]

    def _all_nodes_at_least(self, minimum):
        return all(
            node is not None and status.phase_at_least(node.phase, minimum)
            for node in self._planned_node_statuses()
        )

    async def _machine_config(self, role):
        talos_role = TALOS_ROLES[NodeRole(role)]
        if talos_role not in self._machine_configs:
            self._machine_configs[talos_role] = await self.talos.generate_config(
                talos_role,
                self.name,
                self.cluster.status.control_plane_endpoint,
                secrets = self.credentials.talos_secrets,
                kubernetes_version = self.cluster.spec.kubernetes.version,
                talos_version = self.cluster.spec.talos.version
            )
        return self._machine_configs[talos_role]

    async def _apply_configs(self):
        """
        Applies machine configs to nodes that were observed in maintenance mode.
        """
        for role, node in list(status.iter_nodes(self.cluster)):
            info = self.observations.get(node.name)
            if not info or not info.talos_in_maintenance_mode or not info.server_ip:
                continue
            logger.info("applying Talos config to node %s", node.name)
            patch = default_loader.talos_patch(
                TALOS_ROLES[NodeRole(role)],
                node.name,
                cluster = self.cluster
            )
            await self.talos.apply_config(
                info.server_ip,
                await self._machine_config(role),
                insecure = True,
                patches = [patch]
            )
            if status.next_node_phase(node.phase, NodePhase.APPLYING_TALOS_CONFIG):
                status.update_node_phase(
                    self.cluster,
                    role,
                    node.name,
                    NodePhase.APPLYING_TALOS_CONFIG,
                    "Talos config applied, waiting for reboot"
                )

    async def _drive_infrastructure(self):
        infra = self.cluster.status.infrastructure
        labels = cloud_labels(self.cluster)
        network = await self.cloud.ensure_network(
            self.name,
            str(self.cluster.spec.network.ipv4_cidr),
            str(self.cluster.spec.network.node_cidr),
            labels
        )
        infra.network_id = network["id"]
        if self.cluster.spec.firewall.enabled:
            firewall = await self.cloud.ensure_firewall(
                self.name,
                firewall_rules(self.cluster),
                labels,
                cloud_labels(self.cluster)
            )
            infra.firewall_id = firewall["id"]
        if self.cluster.spec.placement_group.enabled:
            placement_group = await self.cloud.ensure_placement_group(
                f"{self.name}-control-plane",
                labels
            )
            infra.placement_group_id = placement_group["id"]
        if not infra.ssh_key_id:
            ssh_key = await self.cloud.ensure_ssh_key(
                self.name,
                generate_ssh_public_key(),
                labels
            )
            infra.ssh_key_id = ssh_key["id"]
        load_balancer = await self.cloud.ensure_load_balancer(
            f"{self.name}-kube-api",
            self.cluster.spec.region,
            infra.network_id,
            labels,
            cloud_labels(self.cluster, role = NodeRole.CONTROL_PLANE.value)
        )
        infra.load_balancer_id = load_balancer["id"]
        infra.load_balancer_ip = (
            load_balancer.get("public_net", {}).get("ipv4", {}).get("ip")
        )
        if infra.load_balancer_ip:
            self.cluster.status.control_plane_endpoint = (
                f"https://{infra.load_balancer_ip}:{KUBERNETES_API_PORT}"
            )
        return bool(
            infra.network_id and
            infra.load_balancer_id and
            self.cluster.status.control_plane_endpoint and
            (infra.firewall_id or not self.cluster.spec.firewall.enabled) and
            (infra.placement_group_id or not self.cluster.spec.placement_group.enabled)
        )

    async def _drive_image(self):
        labels = snapshot_labels(self.cluster)
        snapshot = await self.cloud.find_snapshot(labels)
        if snapshot is None:
            selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
            raise ConfigurationError(f"no Talos snapshot found with labels {selector}")
        self.cluster.status.infrastructure.snapshot_id = snapshot["id"]
        return True

    async def _drive_compute(self):
        return self._all_nodes_at_least(NodePhase.WAITING_FOR_TALOS_API)

    async def _drive_bootstrap(self):
        first = status.find_node(
            self.cluster,
            NodeRole.CONTROL_PLANE,
            node_name(self.cluster, NodeRole.CONTROL_PLANE, 1)
        )
        if first is None:
            return False
        info = self.observations.get(first.name)
        if not self.cluster.status.bootstrapped:
            # etcd can only be bootstrapped once the node has its config
            if not info or not info.talos_configured:
                return False
            logger.info("bootstrapping etcd on node %s", first.name)
            if not await self.talos.bootstrap(info.server_ip):
                logger.info("etcd was already bootstrapped on node %s", first.name)
            self.cluster.status.bootstrapped = True
        if not self.cluster.status.kubeconfig_secret_name:
            ip = self._node_ip(first)
            kubeconfig = await self.talos.kubeconfig(ip)
            secret_name = kubeconfig_secret_name(self.cluster)
            await kube.ensure_secret(
                self.management_client,
                secret_name,
                self.cluster.metadata.namespace,
                { KUBECONFIG_KEY: kubeconfig },
                labels = cloud_labels(self.cluster),
                owner = self.cluster.model_dump(by_alias = True)
            )
            self.cluster.status.kubeconfig_secret_name = secret_name
        return self._all_nodes_at_least(NodePhase.WAITING_FOR_K8S)

    def _require_addons(self):
        if self.addons is None:
            raise ConfigurationError("no Kubernetes client is available for the cluster")
        return self.addons

    async def _drive_cni(self):
        addons = self._require_addons()
        await addons.install_next(self.cluster, names = {"cilium"})
        return addons.complete(self.cluster, names = {"cilium"})

    async def _drive_addons(self):
        addons = self._require_addons()
        if not self._all_nodes_at_least(NodePhase.READY):
            logger.info("waiting for all nodes to become ready before installing addons")
            return False
        await addons.install_next(self.cluster)
        return addons.complete(self.cluster)

    async def _drive_complete(self):
        if self.addons is not None:
            await self.addons.refresh_health(self.cluster)
        return False

    async def _drive(self, phase):
        driver = {
            ProvisioningPhase.INFRASTRUCTURE: self._drive_infrastructure,
            ProvisioningPhase.IMAGE: self._drive_image,
            ProvisioningPhase.COMPUTE: self._drive_compute,
            ProvisioningPhase.BOOTSTRAP: self._drive_bootstrap,
            ProvisioningPhase.CNI: self._drive_cni,
            ProvisioningPhase.ADDONS: self._drive_addons,
            ProvisioningPhase.COMPLETE: self._drive_complete,
        }[phase]
        return await driver()

    def _advance(self):
        following = status.advance(self.cluster)
        if following == ProvisioningPhase.COMPLETE:
            if not self.cluster.status.talos_version:
                self.cluster.status.talos_version = talos.normalise_version(
                    self.cluster.spec.talos.version
                )
            if not self.cluster.status.kubernetes_version:
                self.cluster.status.kubernetes_version = talos.normalise_version(
                    self.cluster.spec.kubernetes.version
                )
        return following

    async def reconcile(self, generation = None):
        """
        Makes a single reconcile pass.

        Returns true if the macro-phase advanced. Raises ReconcileError if the pass
        failed, after recording the error in the status.
        """
        self.observations = {}
        self._machine_configs = {}
        status.initialise(self.cluster, generation)
        phase = self.phase
        error = None
        advanced = False
        try:
            if phase.position >= ProvisioningPhase.COMPUTE.position:
                await self._ensure_servers()
            await self._verify_nodes()
            self._check_stuck_nodes()
            await self._remove_nodes()
            status.update_ready_counts(self.cluster)
            if phase.position >= ProvisioningPhase.BOOTSTRAP.position:
                await self._apply_configs()
            if await self._drive(phase):
                advanced = self._advance() is not None
        except Exception as exc:
            logger.exception("reconcile of cluster %s failed in %s", self.name, phase.value)
            status.record_phase_error(self.cluster, phase.value.lower(), exc)
            error = exc
        status.finalise(self.cluster)
        if error is not None:
            raise ReconcileError(str(error)) from error
        return advanced

    async def upgrade(self, options):
        """
        Runs the given upgrade against the nodes of the cluster and records the
        outcome in the status.
        """
        now = dt.datetime.now(dt.timezone.utc)
        self.cluster.status.upgrade = UpgradeStatus(
            phase = UpgradePhase.IN_PROGRESS,
            talos_version = options.talos_version,
            kubernetes_version = (
                options.kubernetes_version or self.cluster.status.kubernetes_version
            ),
            started_at = now
        )
        if self.save and not options.dry_run:
            await self.save(self.cluster)
        nodes = [
            UpgradeNode(
                name = node.name,
                role = NodeRole(role),
                ip = node.public_ip or node.private_ip
            )
            for role, node in status.iter_nodes(self.cluster)
            if NodePhase(node.phase) not in status.TERMINAL_NODE_PHASES
            if node.public_ip or node.private_ip
        ]
        upgrade = self.cluster.status.upgrade
        try:
            result = await UpgradeOrchestrator(self.talos).run(nodes, options)
        except UpgradeError as exc:
            upgrade.phase = UpgradePhase.FAILED
            upgrade.message = str(exc)
            upgrade.finished_at = dt.datetime.now(dt.timezone.utc)
            status.record_error(self.cluster, "upgrade", exc)
            status.finalise(self.cluster)
            raise ReconcileError(str(exc)) from exc
        upgrade.finished_at = dt.datetime.now(dt.timezone.utc)
        if options.dry_run:
            upgrade.phase = UpgradePhase.PLANNED
            upgrade.message = "; ".join(result.plan)
        elif result.failed:
            upgrade.phase = UpgradePhase.FAILED
            upgrade.message = "; ".join(
                f"{name}: {message}" for name, message in result.failed.items()
            )
            for name, message in result.failed.items():
                status.record_error(self.cluster, f"node/{name}", message)
        else:
            upgrade.phase = UpgradePhase.SUCCEEDED
            upgrade.message = (
                f"upgraded {len(result.upgraded)} nodes, "
                f"{len(result.skipped)} already up to date"
            )
            self.cluster.status.talos_version = options.talos_version
            if result.kubernetes_upgraded:
                self.cluster.status.kubernetes_version = options.kubernetes_version
        status.finalise(self.cluster)
        return result
