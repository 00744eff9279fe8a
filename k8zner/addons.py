import asyncio
import dataclasses
import datetime as dt
import graphlib
import logging
import typing as t

from pyhelm3 import Client as HelmClient

from . import kube
from .config import settings
from .errors import ConfigurationError
from .models.v1alpha1 import AddonPhase, AddonStatus
from .template import default_loader
from .utils import mergeconcat


logger = logging.getLogger(__name__)


#: Kinds that are not namespaced, so must not be given a namespace
CLUSTER_SCOPED_KINDS = {
    "APIService",
    "ClusterIssuer",
    "ClusterRole",
    "ClusterRoleBinding",
    "CSIDriver",
    "CustomResourceDefinition",
    "GatewayClass",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "PriorityClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
}


class HelmRenderer:
    """
    Renders Helm charts into manifests without installing them.
    """
    def __init__(self, client = None):
        self.client = client or HelmClient(
            default_timeout = settings.helm_client.default_timeout,
            executable = settings.helm_client.executable,
            history_max_revisions = settings.helm_client.history_max_revisions,
            insecure_skip_tls_verify = settings.helm_client.insecure_skip_tls_verify,
            unpack_directory = settings.helm_client.unpack_directory
        )

    async def render(self, chart, release_name, values, namespace):
        """
        Returns the manifests for the given chart configuration and values.
        """
        return list(
            await self.client.template_resources(
                await self.client.get_chart(
                    chart.name,
                    repo = chart.repo,
                    version = chart.version
                ),
                release_name,
                values,
                include_crds = True,
                namespace = namespace
            )
        )


@dataclasses.dataclass
class AddonContext:
    """
    Values that addons need to produce their manifests, beyond the cluster itself.
    """
    #: The Hetzner Cloud API token
    hcloud_token: str
    #: The ID of the private network of the cluster
    network_id: t.Optional[int] = None
    #: The S3 configuration for etcd backups
    backup_s3: t.Dict[str, str] = dataclasses.field(default_factory = dict)
    #: The renderer for Helm charts
    renderer: HelmRenderer = dataclasses.field(default_factory = HelmRenderer)


def namespace_manifest(name):
    return { "apiVersion": "v1", "kind": "Namespace", "metadata": { "name": name } }


def hcloud_secret_manifest(context):
    """
    Returns the secret used by the Hetzner Cloud controllers.
    """
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": { "name": "hcloud", "namespace": "kube-system" },
        "stringData": {
            "token": context.hcloud_token,
            "network": str(context.network_id or ""),
        },
    }


def with_namespace(manifests, namespace):
    """
    Returns the manifests with the given namespace set on namespaced objects that
    do not specify one.
    """
    for manifest in manifests:
        if manifest.get("kind") not in CLUSTER_SCOPED_KINDS:
            manifest.setdefault("metadata", {}).setdefault("namespace", namespace)
    return manifests


class Addon:
    """
    Base class for addon definitions.
    """
    #: The name of the addon
    name: str = None
    #: The names of the addons that must be installed first
    depends_on: t.Tuple[str, ...] = ()
    #: The namespace that the addon is installed into
    namespace: str = "kube-system"
    #: The (kind, namespace, name) of the workloads that must be ready
    workloads: t.Tuple[t.Tuple[str, str, str], ...] = ()

    def enabled(self, cluster):
        return True

    async def manifests(self, cluster, context):
        raise NotImplementedError

    async def verify(self, client, timeout):
        """
        Waits for the workloads of the addon to become ready.
        """
        await kube.wait_for_workloads(
            client,
            self.workloads,
            timeout,
            settings.addons.poll_interval
        )

    async def is_healthy(self, client):
        for workload in self.workloads:
            if not await kube.is_workload_ready(client, *workload):
                return False
        return True


class HelmAddon(Addon):
    """
    Base class for addons that are installed from a Helm chart.
    """
    #: The name of the Helm release, defaulting to the addon name
    release_name: str = None

    @property
    def chart(self):
        return settings.addons.charts[self.name]

    def extra_manifests(self, cluster, context):
        """
        Returns manifests to apply before the chart.
        """
        return []

    async def manifests(self, cluster, context):
        values = mergeconcat(
            default_loader.addon_values(self.name, cluster = cluster, context = context),
            settings.addons.values.get(self.name, {})
        )
        rendered = await context.renderer.render(
            self.chart,
            self.release_name or self.name,
            values,
            self.namespace
        )
        manifests = self.extra_manifests(cluster, context) + rendered
        if self.namespace != "kube-system":
            manifests.insert(0, namespace_manifest(self.namespace))
        return with_namespace(manifests, self.namespace)


class Cilium(HelmAddon):
    name = "cilium"
    workloads = (
        ("DaemonSet", "kube-system", "cilium"),
        ("Deployment", "kube-system", "cilium-operator"),
    )


class HCloudCCM(HelmAddon):
    name = "hcloud-ccm"
    release_name = "hcloud-cloud-controller-manager"
    depends_on = ("cilium", )
    workloads = (("Deployment", "kube-system", "hcloud-cloud-controller-manager"), )

    def extra_manifests(self, cluster, context):
        return [hcloud_secret_manifest(context)]


class HCloudCSI(HelmAddon):
    name = "hcloud-csi"
    depends_on = ("hcloud-ccm", )
    workloads = (("Deployment", "kube-system", "hcloud-csi-controller"), )

    def extra_manifests(self, cluster, context):
        return [hcloud_secret_manifest(context)]


class MetricsServer(HelmAddon):
    name = "metrics-server"
    depends_on = ("cilium", )
    workloads = (("Deployment", "kube-system", "metrics-server"), )

    def enabled(self, cluster):
        return cluster.spec.addons.metrics_server


class CertManager(HelmAddon):
    name = "cert-manager"
    depends_on = ("cilium", )
    namespace = "cert-manager"
    workloads = (
        ("Deployment", "cert-manager", "cert-manager"),
        ("Deployment", "cert-manager", "cert-manager-webhook"),
    )

    def enabled(self, cluster):
        return cluster.spec.addons.cert_manager


class Traefik(HelmAddon):
    name = "traefik"
    depends_on = ("hcloud-ccm", )
    namespace = "traefik"
    workloads = (("Deployment", "traefik", "traefik"), )

    def enabled(self, cluster):
        return cluster.spec.addons.traefik


class ExternalDNS(HelmAddon):
    name = "external-dns"
    depends_on = ("hcloud-ccm", )
    namespace = "external-dns"
    workloads = (("Deployment", "external-dns", "external-dns"), )

    def enabled(self, cluster):
        return cluster.spec.addons.external_dns

    def extra_manifests(self, cluster, context):
        # The DNS provider reads the token from its own namespace
        secret = hcloud_secret_manifest(context)
        secret["metadata"]["namespace"] = self.namespace
        return [secret]


class ArgoCD(HelmAddon):
    name = "argocd"
    depends_on = ("hcloud-ccm", )
    namespace = "argocd"
    workloads = (("Deployment", "argocd", "argocd-server"), )

    def enabled(self, cluster):
        return cluster.spec.addons.argocd


class Monitoring(HelmAddon):
    name = "monitoring"
    release_name = "kube-prometheus-stack"
    depends_on = ("hcloud-csi", )
    namespace = "monitoring"
    workloads = (
        ("StatefulSet", "monitoring", "prometheus-kube-prometheus-stack-prometheus"),
        ("Deployment", "monitoring", "kube-prometheus-stack-grafana"),
    )

    def enabled(self, cluster):
        return cluster.spec.addons.monitoring


class TalosBackup(Addon):
    """
    Periodic etcd snapshots uploaded to S3, using the Talos API from inside the
    cluster.
    """
    name = "talos-backup"
    depends_on = ("hcloud-ccm", )
    workloads = (("CronJob", "kube-system", "talos-backup"), )

    def enabled(self, cluster):
        return cluster.spec.backup.enabled

    async def manifests(self, cluster, context):
        return default_loader.load(
            "addons/talos-backup.yaml",
            cluster = cluster,
            s3_config = context.backup_s3
        )


#: The known addons, in order of preference when the dependencies allow a choice
REGISTRY = [
    Cilium(),
    HCloudCCM(),
    HCloudCSI(),
    MetricsServer(),
    CertManager(),
    Traefik(),
    ExternalDNS(),
    ArgoCD(),
    Monitoring(),
    TalosBackup(),
]


def _now():
    return dt.datetime.now(dt.timezone.utc)


class AddonOrchestrator:
    """
    Installs the enabled addons for a cluster one at a time, in dependency order.

    The phase of each addon is recorded in the cluster status. The on_transition
    callback is awaited whenever an addon changes phase, so that the change can be
    persisted before a potentially long install.
    """
    def __init__(self, client, context, registry = None, on_transition = None):
        self.client = client
        self.context = context
        self.registry = list(REGISTRY if registry is None else registry)
        self.on_transition = on_transition

    def _position(self, name):
        return next(i for i, addon in enumerate(self.registry) if addon.name == name)

    def _validate(self, cluster):
        known = { addon.name: addon for addon in self.registry }
        enabled = { addon.name: addon for addon in self.registry if addon.enabled(cluster) }
        for addon in enabled.values():
            for dependency in addon.depends_on:
                if dependency not in known:
                    raise ConfigurationError(
                        f"addon {addon.name} depends on unknown addon {dependency}"
                    )
                if dependency not in enabled:
                    raise ConfigurationError(
                        f"addon {addon.name} depends on {dependency}, which is not enabled"
                    )
        return enabled

    def order(self, cluster):
        """
        Returns the enabled addons in the order in which they should be installed.

        Raises ConfigurationError if the dependencies cannot be satisfied.
        """
        enabled = self._validate(cluster)
        sorter = graphlib.TopologicalSorter(
            { name: addon.depends_on for name, addon in enabled.items() }
        )
        try:
            sorter.prepare()
        except graphlib.CycleError as exc:
            cycle = " -> ".join(exc.args[1])
            raise ConfigurationError(f"addon dependencies contain a cycle: {cycle}")
        # Of the addons whose dependencies are done, always take the earliest registered
        ordered = []
        ready = set()
        while sorter.is_active():
            ready.update(sorter.get_ready())
            name = min(ready, key = self._position)
            ready.remove(name)
            ordered.append(enabled[name])
            sorter.done(name)
        return ordered

    def _status(self, cluster, name):
        return cluster.status.addons.setdefault(name, AddonStatus())

    async def _transition(self, cluster, addon, phase, message = None):
        status = self._status(cluster, addon.name)
        status.phase = phase
        status.message = message
        logger.info("addon %s is now %s", addon.name, AddonPhase(phase).value)
        if self.on_transition:
            await self.on_transition(cluster, addon.name, status)

    def _eligible(self, cluster, addon):
        status = self._status(cluster, addon.name)
        if AddonPhase(status.phase) in {AddonPhase.INSTALLED, AddonPhase.FAILED}:
            return False
        return all(
            AddonPhase(self._status(cluster, dependency).phase) == AddonPhase.INSTALLED
            for dependency in addon.depends_on
        )

    async def _install(self, cluster, addon):
        status = self._status(cluster, addon.name)
        status.started_at = _now()
        await self._transition(cluster, addon, AddonPhase.INSTALLING)
        while True:
            try:
                manifests = await addon.manifests(cluster, self.context)
                await kube.apply_manifests(self.client, manifests)
                await addon.verify(self.client, settings.addons.verify_timeout)
            except Exception as exc:
                status.retry_count += 1
                logger.warning(
                    "install of addon %s failed (attempt %d): %s",
                    addon.name,
                    status.retry_count,
                    exc
                )
                if status.retry_count > settings.addons.max_retries:
                    status.duration = int((_now() - status.started_at).total_seconds())
                    await self._transition(cluster, addon, AddonPhase.FAILED, str(exc))
                    return
                status.message = str(exc)
                await asyncio.sleep(settings.addons.retry_delay)
            else:
                status.installed = True
                status.healthy = True
                status.duration = int((_now() - status.started_at).total_seconds())
                await self._transition(cluster, addon, AddonPhase.INSTALLED, "installed")
                return

    async def install_next(self, cluster, names = None):
        """
        Installs the next addon that is eligible, i.e. not yet installed or failed and
        with all of its dependencies installed.

        If names is given, only addons with those names are considered. Returns the
        name of the addon that was processed, or None if no addon is eligible.
        """
        ordered = self.order(cluster)
        for position, addon in enumerate(ordered):
            self._status(cluster, addon.name).install_order = position
        addon = next(
            (
                addon
                for addon in ordered
                if (names is None or addon.name in names) and self._eligible(cluster, addon)
            ),
            None
        )
        if addon is None:
            return None
        await self._install(cluster, addon)
        return addon.name

    async def run(self, cluster):
        """
        Installs addons until no more are eligible.
        """
        while await self.install_next(cluster):
            pass

    def complete(self, cluster, names = None):
        """
        Returns true if all of the enabled addons, or those with the given names, are
        installed.
        """
        return all(
            AddonPhase(self._status(cluster, addon.name).phase) == AddonPhase.INSTALLED
            for addon in self.order(cluster)
            if names is None or addon.name in names
        )

    def failed(self, cluster):
        """
        Returns the names of the addons that have failed.
        """
        return [
            name
            for name, status in cluster.status.addons.items()
            if AddonPhase(status.phase) == AddonPhase.FAILED
        ]

    async def refresh_health(self, cluster):
        """
        Updates the healthy flag of each installed addon.
        """
        for addon in self.order(cluster):
            status = self._status(cluster, addon.name)
            if AddonPhase(status.phase) != AddonPhase.INSTALLED:
                continue
            try:
                status.healthy = await addon.is_healthy(self.client)
            except Exception as exc:
                logger.warning("health check for addon %s failed: %s", addon.name, exc)
                status.healthy = False
