import unittest
from unittest import mock

from k8zner import addons
from k8zner.errors import ConfigurationError
from k8zner.models.v1alpha1 import AddonPhase

from .fixtures import make_cluster


class FakeAddon(addons.Addon):
    """
    Addon whose install can be made to fail a number of times.
    """
    def __init__(self, name, depends_on = (), enabled = True, failures = 0):
        self.name = name
        self.depends_on = tuple(depends_on)
        self._enabled = enabled
        self.failures = failures
        self.attempts = 0

    def enabled(self, cluster):
        return self._enabled

    async def manifests(self, cluster, context):
        return [{ "apiVersion": "v1", "kind": "ConfigMap", "metadata": { "name": self.name } }]

    async def verify(self, client, timeout):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RuntimeError(f"{self.name} is not ready")


def make_orchestrator(registry, on_transition = None):
    context = addons.AddonContext(hcloud_token = "token", renderer = mock.Mock())
    return addons.AddonOrchestrator(
        mock.Mock(),
        context,
        registry = registry,
        on_transition = on_transition
    )


class TestAddonOrder(unittest.TestCase):
    def test_dependencies_come_first(self):
        orchestrator = make_orchestrator(
            [
                FakeAddon("monitoring", depends_on = ["csi"]),
                FakeAddon("csi", depends_on = ["ccm"]),
                FakeAddon("ccm", depends_on = ["cni"]),
                FakeAddon("cni"),
            ]
        )

        order = [a.name for a in orchestrator.order(make_cluster())]

        self.assertEqual(order, ["cni", "ccm", "csi", "monitoring"])

    def test_ties_are_broken_by_registry_position(self):
        orchestrator = make_orchestrator(
            [
                FakeAddon("cni"),
                FakeAddon("b", depends_on = ["cni"]),
                FakeAddon("a", depends_on = ["cni"]),
                FakeAddon("c"),
            ]
        )

        order = [a.name for a in orchestrator.order(make_cluster())]

        self.assertEqual(order, ["cni", "b", "a", "c"])

    def test_disabled_addons_are_excluded(self):
        orchestrator = make_orchestrator(
            [FakeAddon("cni"), FakeAddon("extra", enabled = False)]
        )

        self.assertEqual([a.name for a in orchestrator.order(make_cluster())], ["cni"])

    def test_unknown_dependency(self):
        orchestrator = make_orchestrator([FakeAddon("a", depends_on = ["missing"])])

        with self.assertRaises(ConfigurationError):
            orchestrator.order(make_cluster())

    def test_disabled_dependency(self):
        orchestrator = make_orchestrator(
            [FakeAddon("cni", enabled = False), FakeAddon("a", depends_on = ["cni"])]
        )

        with self.assertRaises(ConfigurationError) as ctx:
            orchestrator.order(make_cluster())

        self.assertIn("not enabled", str(ctx.exception))

    def test_cycle(self):
        orchestrator = make_orchestrator(
            [FakeAddon("a", depends_on = ["b"]), FakeAddon("b", depends_on = ["a"])]
        )

        with self.assertRaises(ConfigurationError) as ctx:
            orchestrator.order(make_cluster())

        self.assertIn("cycle", str(ctx.exception))

    def test_default_registry_order(self):
        cluster = make_cluster(
            addons = dict(
                metricsServer = True,
                certManager = True,
                traefik = True,
                externalDns = True,
                argocd = True,
                monitoring = True
            ),
            backup = dict(enabled = True, s3SecretName = "backup")
        )
        orchestrator = addons.AddonOrchestrator(
            mock.Mock(),
            addons.AddonContext(hcloud_token = "token", renderer = mock.Mock())
        )

        order = [a.name for a in orchestrator.order(cluster)]

        self.assertEqual(order[0], "cilium")
        self.assertEqual(len(order), len(addons.REGISTRY))
        for addon in addons.REGISTRY:
            for dependency in addon.depends_on:
                self.assertLess(order.index(dependency), order.index(addon.name))

    def test_default_registry_for_minimal_cluster(self):
        orchestrator = addons.AddonOrchestrator(
            mock.Mock(),
            addons.AddonContext(hcloud_token = "token", renderer = mock.Mock())
        )

        order = [a.name for a in orchestrator.order(make_cluster())]

        self.assertEqual(order, ["cilium", "hcloud-ccm", "hcloud-csi", "metrics-server"])


@mock.patch("k8zner.kube.apply_manifests", new_callable = mock.AsyncMock)
class TestAddonInstall(unittest.IsolatedAsyncioTestCase):
    async def test_installs_one_addon_per_call(self, apply_manifests):
        cluster = make_cluster()
        orchestrator = make_orchestrator([FakeAddon("cni"), FakeAddon("ccm", ["cni"])])

        self.assertEqual(await orchestrator.install_next(cluster), "cni")

        self.assertEqual(apply_manifests.await_count, 1)
        self.assertEqual(cluster.status.addons["cni"].phase, AddonPhase.INSTALLED)
        self.assertTrue(cluster.status.addons["cni"].installed)
        self.assertEqual(cluster.status.addons["ccm"].phase, AddonPhase.NOT_INSTALLED)
        self.assertEqual(cluster.status.addons["ccm"].install_order, 1)
        self.assertFalse(orchestrator.complete(cluster))

        await orchestrator.run(cluster)

        self.assertTrue(orchestrator.complete(cluster))
        self.assertIsNone(await orchestrator.install_next(cluster))

    async def test_names_restrict_the_candidates(self, apply_manifests):
        cluster = make_cluster()
        orchestrator = make_orchestrator([FakeAddon("cni"), FakeAddon("other")])

        await orchestrator.install_next(cluster, names = {"cni"})
        self.assertIsNone(await orchestrator.install_next(cluster, names = {"cni"}))

        self.assertTrue(orchestrator.complete(cluster, names = {"cni"}))
        self.assertFalse(orchestrator.complete(cluster))

    async def test_transitions_are_reported(self, apply_manifests):
        cluster = make_cluster()
        on_transition = mock.AsyncMock()
        orchestrator = make_orchestrator([FakeAddon("cni")], on_transition)

        await orchestrator.install_next(cluster)

        # Once when the install starts and once when it finishes
        self.assertEqual([c.args[1] for c in on_transition.await_args_list], ["cni", "cni"])
        self.assertIs(on_transition.await_args.args[0], cluster)

    @mock.patch("asyncio.sleep", new_callable = mock.AsyncMock)
    async def test_transient_failure_is_retried(self, sleep, apply_manifests):
        cluster = make_cluster()
        addon = FakeAddon("cni", failures = 2)
        orchestrator = make_orchestrator([addon])

        await orchestrator.install_next(cluster)

        status = cluster.status.addons["cni"]
        self.assertEqual(status.phase, AddonPhase.INSTALLED)
        self.assertEqual(status.retry_count, 2)
        self.assertEqual(addon.attempts, 3)
        self.assertEqual(sleep.await_count, 2)

    @mock.patch("asyncio.sleep", new_callable = mock.AsyncMock)
    async def test_exhausted_retries_fail_the_addon(self, sleep, apply_manifests):
        cluster = make_cluster()
        orchestrator = make_orchestrator(
            [FakeAddon("cni", failures = 100), FakeAddon("ccm", ["cni"])]
        )

        await orchestrator.run(cluster)

        status = cluster.status.addons["cni"]
        self.assertEqual(status.phase, AddonPhase.FAILED)
        self.assertEqual(status.retry_count, addons.settings.addons.max_retries + 1)
        self.assertIn("not ready", status.message)
        self.assertEqual(orchestrator.failed(cluster), ["cni"])
        # Dependents are never attempted
        self.assertEqual(cluster.status.addons["ccm"].phase, AddonPhase.NOT_INSTALLED)


class TestAddonManifests(unittest.IsolatedAsyncioTestCase):
    async def test_helm_addon_in_own_namespace(self):
        renderer = mock.Mock()
        renderer.render = mock.AsyncMock(
            return_value = [
                { "apiVersion": "apps/v1", "kind": "Deployment", "metadata": { "name": "traefik" } },
                { "apiVersion": "v1", "kind": "ClusterRole", "metadata": { "name": "traefik" } },
            ]
        )
        context = addons.AddonContext(hcloud_token = "token", renderer = renderer)

        manifests = await addons.Traefik().manifests(make_cluster(), context)

        self.assertEqual(manifests[0]["kind"], "Namespace")
        self.assertEqual(manifests[0]["metadata"]["name"], "traefik")
        self.assertEqual(manifests[1]["metadata"]["namespace"], "traefik")
        self.assertNotIn("namespace", manifests[2]["metadata"])
        chart, release_name, _, namespace = renderer.render.call_args.args
        self.assertEqual(chart.name, "traefik")
        self.assertEqual(release_name, "traefik")
        self.assertEqual(namespace, "traefik")

    async def test_ccm_includes_token_secret(self):
        renderer = mock.Mock()
        renderer.render = mock.AsyncMock(return_value = [])
        context = addons.AddonContext(
            hcloud_token = "secret-token",
            network_id = 1234,
            renderer = renderer
        )

        manifests = await addons.HCloudCCM().manifests(make_cluster(), context)

        self.assertEqual(len(manifests), 1)
        self.assertEqual(manifests[0]["metadata"]["namespace"], "kube-system")
        self.assertEqual(manifests[0]["stringData"]["token"], "secret-token")
        self.assertEqual(manifests[0]["stringData"]["network"], "1234")
        self.assertEqual(
            renderer.render.call_args.args[1],
            "hcloud-cloud-controller-manager"
        )

    async def test_cilium_values(self):
        renderer = mock.Mock()
        renderer.render = mock.AsyncMock(return_value = [])
        context = addons.AddonContext(hcloud_token = "token", renderer = renderer)

        await addons.Cilium().manifests(make_cluster(), context)

        values = renderer.render.call_args.args[2]
        self.assertEqual(values["k8sServicePort"], 7445)
        self.assertEqual(values["ipv4NativeRoutingCIDR"], "10.244.0.0/16")
        self.assertEqual(values["operator"]["replicas"], 1)
