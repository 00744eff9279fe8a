import unittest
from unittest import mock

from k8zner import reconciler, status, talos
from k8zner.errors import ConfigurationError, ObservationError
from k8zner.models.v1alpha1 import (
    NodePhase,
    NodeRole,
    ProvisioningPhase,
    UpgradePhase,
    UpgradeStatus,
)
from k8zner.observer import NodeStateInfo
from k8zner.upgrade import UpgradeError, UpgradeOptions, UpgradeResult

from .fixtures import make_cluster


RUNNING = NodeStateInfo(
    server_exists = True,
    server_status = "running",
    server_ip = "203.0.113.10",
    server_private_ip = "10.0.1.10"
)

READY = NodeStateInfo(
    server_exists = True,
    server_status = "running",
    server_ip = "203.0.113.10",
    server_private_ip = "10.0.1.10",
    talos_api_reachable = True,
    talos_configured = True,
    talos_kubelet_running = True,
    k8s_node_exists = True,
    k8s_node_ready = True
)


def make_cloud():
    cloud = mock.Mock()
    cloud.ensure_server = mock.AsyncMock(
        side_effect = lambda name, *args, **kwargs: { "id": len(name), "name": name }
    )
    cloud.get_server = mock.AsyncMock(return_value = None)
    cloud.delete_server = mock.AsyncMock(return_value = None)
    cloud.find_snapshot = mock.AsyncMock(return_value = { "id": 42 })
    return cloud


def make_reconciler(
    cluster,
    cloud = None,
    observation = RUNNING,
    talos_client = None,
    **kwargs
):
    observer = mock.Mock()
    if isinstance(observation, BaseException):
        observer.observe = mock.AsyncMock(side_effect = observation)
    else:
        observer.observe = mock.AsyncMock(return_value = observation)
    return reconciler.Reconciler(
        cluster,
        cloud = cloud or make_cloud(),
        talos_client = talos_client or mock.Mock(),
        credentials = reconciler.Credentials("token", "secrets", "talosconfig"),
        observer = observer,
        **kwargs
    )


def complete_cluster(**spec):
    cluster = make_cluster(**spec)
    cluster.status.provisioning_phase = ProvisioningPhase.COMPLETE
    cluster.status.talos_version = "1.8.3"
    cluster.status.kubernetes_version = "1.31.2"
    return cluster


class TestNaming(unittest.TestCase):
    def test_planned_nodes(self):
        cluster = make_cluster(controlPlanes = dict(count = 3), workers = dict(count = 2))

        self.assertEqual(
            reconciler.planned_nodes(cluster),
            [
                (NodeRole.CONTROL_PLANE, "test-control-plane-1"),
                (NodeRole.CONTROL_PLANE, "test-control-plane-2"),
                (NodeRole.CONTROL_PLANE, "test-control-plane-3"),
                (NodeRole.WORKER, "test-worker-1"),
                (NodeRole.WORKER, "test-worker-2"),
            ]
        )

    def test_cloud_labels(self):
        self.assertEqual(
            reconciler.cloud_labels(make_cluster(), role = "worker"),
            { "cluster": "test", "managed-by": "k8zner", "role": "worker" }
        )

    def test_snapshot_labels(self):
        cluster = make_cluster()
        self.assertEqual(
            reconciler.snapshot_labels(cluster),
            { "os": "talos", "talos-version": "v1.8.3" }
        )
        cluster.spec.talos.schematic_id = "abc123"
        self.assertEqual(reconciler.snapshot_labels(cluster)["talos-schematic"], "abc123")

    def test_firewall_rules(self):
        cluster = make_cluster(firewall = dict(allowedApiSources = ["192.0.2.0/24"]))

        rules = reconciler.firewall_rules(cluster)

        self.assertEqual(rules[0]["port"], "6443")
        self.assertEqual(rules[0]["source_ips"], ["192.0.2.0/24"])
        self.assertEqual(rules[2]["protocol"], "icmp")


class TestPendingUpgrade(unittest.TestCase):
    def test_provisioning_cluster(self):
        cluster = make_cluster()
        cluster.status.talos_version = "1.8.2"

        self.assertIsNone(reconciler.pending_upgrade(cluster))

    def test_versions_match(self):
        self.assertIsNone(reconciler.pending_upgrade(complete_cluster()))

    def test_talos_upgrade(self):
        cluster = complete_cluster()
        cluster.status.talos_version = "1.8.2"

        options = reconciler.pending_upgrade(cluster)

        self.assertEqual(options.talos_version, "1.8.3")
        self.assertIsNone(options.kubernetes_version)
        self.assertFalse(options.dry_run)
        self.assertFalse(options.skip_health_check)

    def test_kubernetes_upgrade(self):
        cluster = complete_cluster()
        cluster.status.kubernetes_version = "1.31.1"

        options = reconciler.pending_upgrade(cluster)

        self.assertEqual(options.kubernetes_version, "1.31.2")

    def test_annotations(self):
        cluster = complete_cluster()
        cluster.status.talos_version = "1.8.2"

        options = reconciler.pending_upgrade(
            cluster,
            {
                "k8zner.io/upgrade-dry-run": "true",
                "k8zner.io/skip-health-check": "yes",
            }
        )

        self.assertTrue(options.dry_run)
        self.assertTrue(options.skip_health_check)

    def test_failed_target_is_not_retried(self):
        cluster = complete_cluster()
        cluster.status.talos_version = "1.8.2"
        cluster.status.upgrade = UpgradeStatus(
            phase = UpgradePhase.FAILED,
            talos_version = "1.8.3",
            kubernetes_version = "1.31.2"
        )

        self.assertIsNone(reconciler.pending_upgrade(cluster))

        # A different target is attempted
        cluster.spec.talos.version = "1.8.4"
        self.assertEqual(reconciler.pending_upgrade(cluster).talos_version, "1.8.4")

    def test_planned_target_is_run_once_dry_run_is_removed(self):
        cluster = complete_cluster()
        cluster.status.talos_version = "1.8.2"
        cluster.status.upgrade = UpgradeStatus(
            phase = UpgradePhase.PLANNED,
            talos_version = "1.8.3",
            kubernetes_version = "1.31.2"
        )

        self.assertIsNone(
            reconciler.pending_upgrade(cluster, { "k8zner.io/upgrade-dry-run": "true" })
        )
        self.assertIsNotNone(reconciler.pending_upgrade(cluster))


@mock.patch("k8zner.kube.patch_secret_data", new_callable = mock.AsyncMock)
@mock.patch("k8zner.kube.fetch_secret", new_callable = mock.AsyncMock)
class TestCredentials(unittest.IsolatedAsyncioTestCase):
    def make_talos(self):
        talos_client = mock.Mock()
        talos_client.generate_secrets = mock.AsyncMock(return_value = "generated-secrets")
        talos_client.generate_talosconfig = mock.AsyncMock(return_value = "generated-config")
        return talos_client

    async def test_missing_secret(self, fetch_secret, patch_secret_data):
        fetch_secret.return_value = None

        with self.assertRaises(ConfigurationError):
            await reconciler.ensure_credentials(mock.Mock(), make_cluster(), self.make_talos())

    async def test_missing_token(self, fetch_secret, patch_secret_data):
        fetch_secret.return_value = { "data": {} }

        with self.assertRaises(ConfigurationError) as ctx:
            await reconciler.ensure_credentials(mock.Mock(), make_cluster(), self.make_talos())

        self.assertIn("hcloud-token", str(ctx.exception))

    async def test_talos_credentials_are_generated(self, fetch_secret, patch_secret_data):
        fetch_secret.return_value = { "data": { "hcloud-token": "dG9rZW4=" } }
        talos_client = self.make_talos()
        client = mock.Mock()

        credentials = await reconciler.ensure_credentials(client, make_cluster(), talos_client)

        self.assertEqual(
            credentials,
            reconciler.Credentials("token", "generated-secrets", "generated-config")
        )
        self.assertEqual(
            talos_client.generate_talosconfig.await_args.kwargs["secrets"],
            "generated-secrets"
        )
        patch_secret_data.assert_awaited_once_with(
            client,
            "test-credentials",
            "tenant1",
            { "talos-secrets": "generated-secrets", "talosconfig": "generated-config" }
        )

    async def test_existing_credentials_are_kept(self, fetch_secret, patch_secret_data):
        fetch_secret.return_value = {
            "data": {
                "hcloud-token": "dG9rZW4=",
                "talos-secrets": "c2VjcmV0cw==",
                "talosconfig": "Y29uZmln",
            },
        }
        talos_client = self.make_talos()

        credentials = await reconciler.ensure_credentials(mock.Mock(), make_cluster(), talos_client)

        self.assertEqual(credentials, reconciler.Credentials("token", "secrets", "config"))
        talos_client.generate_secrets.assert_not_called()
        patch_secret_data.assert_not_called()

    async def test_backups_disabled(self, fetch_secret, patch_secret_data):
        self.assertEqual(await reconciler.load_backup_config(mock.Mock(), make_cluster()), {})
        fetch_secret.assert_not_called()

    async def test_backup_secret_missing(self, fetch_secret, patch_secret_data):
        fetch_secret.return_value = None
        cluster = make_cluster(backup = dict(enabled = True, s3SecretName = "backup"))

        with self.assertRaises(ConfigurationError):
            await reconciler.load_backup_config(mock.Mock(), cluster)


class TestReconcile(unittest.IsolatedAsyncioTestCase):
    async def test_image_phase_finds_snapshot(self):
        cluster = make_cluster()
        cluster.status.provisioning_phase = ProvisioningPhase.IMAGE

        advanced = await make_reconciler(cluster).reconcile(generation = 3)

        self.assertTrue(advanced)
        self.assertEqual(cluster.status.provisioning_phase, ProvisioningPhase.COMPUTE)
        self.assertEqual(cluster.status.infrastructure.snapshot_id, 42)
        self.assertEqual(cluster.status.observed_generation, 3)

    async def test_missing_snapshot_is_recorded(self):
        cluster = make_cluster()
        cluster.status.provisioning_phase = ProvisioningPhase.IMAGE
        cloud = make_cloud()
        cloud.find_snapshot.return_value = None

        with self.assertRaises(reconciler.ReconcileError):
            await make_reconciler(cluster, cloud).reconcile()

        self.assertEqual(cluster.status.provisioning_phase, ProvisioningPhase.IMAGE)
        self.assertEqual(cluster.status.last_errors[-1].component, "image")
        self.assertIn("no Talos snapshot", cluster.status.phase_history[-1].error)
        self.assertIsNotNone(cluster.status.last_reconcile_time)

    async def test_compute_phase_creates_servers(self):
        cluster = make_cluster(workers = dict(count = 1))
        cluster.status.provisioning_phase = ProvisioningPhase.COMPUTE
        cluster.status.infrastructure.network_id = 8
        cluster.status.infrastructure.placement_group_id = 9
        cloud = make_cloud()

        advanced = await make_reconciler(cluster, cloud).reconcile()

        self.assertTrue(advanced)
        self.assertEqual(cluster.status.provisioning_phase, ProvisioningPhase.BOOTSTRAP)
        calls = { c.args[0]: c.kwargs for c in cloud.ensure_server.await_args_list }
        self.assertEqual(set(calls), {"test-control-plane-1", "test-worker-1"})
        self.assertEqual(calls["test-control-plane-1"]["placement_group"], 9)
        self.assertNotIn("placement_group", calls["test-worker-1"])
        self.assertEqual(calls["test-worker-1"]["networks"], [8])
        self.assertEqual(calls["test-worker-1"]["labels"]["role"], "worker")
        for _, node in status.iter_nodes(cluster):
            self.assertEqual(node.phase, NodePhase.WAITING_FOR_TALOS_API)
            self.assertEqual(node.public_ip, "203.0.113.10")
            self.assertEqual(node.private_ip, "10.0.1.10")

    async def test_servers_are_not_created_before_compute(self):
        cluster = make_cluster()
        cluster.status.provisioning_phase = ProvisioningPhase.IMAGE
        cloud = make_cloud()

        await make_reconciler(cluster, cloud).reconcile()

        cloud.ensure_server.assert_not_called()

    async def test_observation_errors_are_recorded(self):
        cluster = make_cluster()
        cluster.status.provisioning_phase = ProvisioningPhase.COMPUTE
        status.update_node_phase(
            cluster,
            NodeRole.CONTROL_PLANE,
            "test-control-plane-1",
            NodePhase.WAITING_FOR_IP,
            "server is starting"
        )
        recon = make_reconciler(
            cluster,
            observation = ObservationError("test-control-plane-1", "timed out")
        )

        advanced = await recon.reconcile()

        self.assertFalse(advanced)
        node = status.find_node(cluster, NodeRole.CONTROL_PLANE, "test-control-plane-1")
        self.assertEqual(node.phase, NodePhase.WAITING_FOR_IP)
        self.assertEqual(cluster.status.last_errors[-1].component, "node/test-control-plane-1")

    async def test_failed_worker_is_replaced(self):
        cluster = make_cluster(workers = dict(count = 1))
        cluster.status.provisioning_phase = ProvisioningPhase.COMPUTE
        status.update_node_phase(
            cluster,
            NodeRole.WORKER,
            "test-worker-1",
            NodePhase.FAILED,
            "no server found via cloud provider"
        )
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 5 }

        await make_reconciler(cluster, cloud).reconcile()

        cloud.delete_server.assert_awaited_once_with(5)
        node = status.find_node(cluster, NodeRole.WORKER, "test-worker-1")
        self.assertEqual(node.phase, NodePhase.DELETING_SERVER)

        # Once the server is gone, the slot is planned again
        cloud.get_server.return_value = None
        await make_reconciler(cluster, cloud).reconcile()

        self.assertIsNone(status.find_node(cluster, NodeRole.WORKER, "test-worker-1"))
        cloud.ensure_server.reset_mock()
        await make_reconciler(cluster, cloud).reconcile()
        self.assertIn(
            "test-worker-1",
            [c.args[0] for c in cloud.ensure_server.await_args_list]
        )

    async def test_surplus_worker_is_deleted(self):
        cluster = make_cluster(workers = dict(count = 1))
        cluster.status.provisioning_phase = ProvisioningPhase.COMPUTE
        status.update_node_phase(
            cluster,
            NodeRole.WORKER,
            "test-worker-2",
            NodePhase.READY,
            "Kubernetes node is ready"
        )
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 12 }

        await make_reconciler(cluster, cloud).reconcile()

        cloud.delete_server.assert_awaited_once_with(12)

    async def test_cni_phase_requires_kubernetes_client(self):
        cluster = make_cluster()
        cluster.status.provisioning_phase = ProvisioningPhase.CNI

        with self.assertRaises(reconciler.ReconcileError):
            await make_reconciler(cluster).reconcile()

        self.assertEqual(cluster.status.last_errors[-1].component, "cni")

    async def test_terminal_nodes_are_not_observed(self):
        cluster = make_cluster(workers = dict(count = 2))
        cluster.status.provisioning_phase = ProvisioningPhase.COMPUTE
        for role, name, phase in [
            (NodeRole.CONTROL_PLANE, "test-control-plane-1", NodePhase.WAITING_FOR_TALOS_API),
            (NodeRole.WORKER, "test-worker-1", NodePhase.FAILED),
            (NodeRole.WORKER, "test-worker-2", NodePhase.DELETING_SERVER),
        ]:
            status.update_node_phase(cluster, role, name, phase, "initial")
        recon = make_reconciler(cluster)

        await recon.reconcile()

        observed = [c.args[0] for c in recon.observer.observe.await_args_list]
        self.assertEqual(observed, ["test-control-plane-1"])

    async def test_reconcile_is_idempotent(self):
        cluster = complete_cluster()
        status.update_node_phase(
            cluster,
            NodeRole.CONTROL_PLANE,
            "test-control-plane-1",
            NodePhase.READY,
            "Kubernetes node is ready",
            public_ip = "203.0.113.10",
            private_ip = "10.0.1.10"
        )
        cloud = make_cloud()
        exclude = {"last_reconcile_time"}

        await make_reconciler(cluster, cloud, observation = READY).reconcile()
        first = cluster.status.model_dump(exclude = exclude)
        await make_reconciler(cluster, cloud, observation = READY).reconcile()
        second = cluster.status.model_dump(exclude = exclude)

        self.assertEqual(first, second)
        cloud.ensure_server.assert_not_called()
        cloud.delete_server.assert_not_called()

    def failed_control_plane_cluster(self, count, ready):
        cluster = complete_cluster(controlPlanes = dict(count = count))
        cluster.status.bootstrapped = True
        for index in range(1, count + 1):
            status.update_node_phase(
                cluster,
                NodeRole.CONTROL_PLANE,
                f"test-control-plane-{index}",
                NodePhase.READY if index <= ready else NodePhase.FAILED,
                "initial",
                public_ip = f"203.0.113.{index}",
                private_ip = f"10.0.1.{index}"
            )
        return cluster

    def make_talos(self):
        talos_client = mock.Mock()
        talos_client.etcd_members = mock.AsyncMock(
            return_value = [
                {
                    "id": "aa01",
                    "hostname": "test-control-plane-1",
                    "peer_urls": ["https://10.0.1.1:2380"],
                },
                {
                    "id": "aa02",
                    "hostname": "test-control-plane-2",
                    "peer_urls": ["https://10.0.1.2:2380"],
                },
                {
                    "id": "aa03",
                    "hostname": "talos-abc-123",
                    "peer_urls": ["https://10.0.1.3:2380"],
                },
            ]
        )
        talos_client.remove_etcd_member = mock.AsyncMock()
        return talos_client

    async def test_failed_control_plane_is_replaced(self):
        cluster = self.failed_control_plane_cluster(3, ready = 2)
        calls = []
        talos_client = self.make_talos()
        talos_client.remove_etcd_member.side_effect = (
            lambda ip, member_id: calls.append(("remove_etcd_member", ip, member_id))
        )
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 7 }
        cloud.delete_server.side_effect = lambda id: calls.append(("delete_server", id))

        await make_reconciler(
            cluster,
            cloud,
            observation = READY,
            talos_client = talos_client
        ).reconcile()

        # The member is matched by its peer address and removed before the server
        self.assertEqual(
            calls,
            [
                ("remove_etcd_member", "203.0.113.10", "aa03"),
                ("delete_server", 7),
            ]
        )
        node = status.find_node(cluster, NodeRole.CONTROL_PLANE, "test-control-plane-3")
        self.assertEqual(node.phase, NodePhase.DELETING_SERVER)

    async def test_control_plane_replacement_requires_quorum(self):
        cluster = self.failed_control_plane_cluster(2, ready = 1)
        talos_client = self.make_talos()
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 7 }

        await make_reconciler(
            cluster,
            cloud,
            observation = READY,
            talos_client = talos_client
        ).reconcile()

        talos_client.remove_etcd_member.assert_not_called()
        cloud.delete_server.assert_not_called()
        node = status.find_node(cluster, NodeRole.CONTROL_PLANE, "test-control-plane-2")
        self.assertEqual(node.phase, NodePhase.FAILED)
        error = cluster.status.last_errors[-1]
        self.assertEqual(error.component, "node/test-control-plane-2")
        self.assertIn("quorum", error.message)

    async def test_control_plane_replacement_propagates_etcd_errors(self):
        cluster = self.failed_control_plane_cluster(3, ready = 2)
        talos_client = self.make_talos()
        talos_client.remove_etcd_member.side_effect = talos.TalosError(1, "", "etcd is unavailable")
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 7 }

        with self.assertRaises(reconciler.ReconcileError):
            await make_reconciler(
                cluster,
                cloud,
                observation = READY,
                talos_client = talos_client
            ).reconcile()

        cloud.delete_server.assert_not_called()
        node = status.find_node(cluster, NodeRole.CONTROL_PLANE, "test-control-plane-3")
        self.assertEqual(node.phase, NodePhase.FAILED)

    async def test_control_plane_before_bootstrap_is_replaced(self):
        cluster = make_cluster()
        cluster.status.provisioning_phase = ProvisioningPhase.COMPUTE
        status.update_node_phase(
            cluster,
            NodeRole.CONTROL_PLANE,
            "test-control-plane-1",
            NodePhase.FAILED,
            "no server found via cloud provider"
        )
        talos_client = self.make_talos()
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 3 }

        await make_reconciler(cluster, cloud, talos_client = talos_client).reconcile()

        talos_client.etcd_members.assert_not_called()
        cloud.delete_server.assert_awaited_once_with(3)

    @mock.patch("k8zner.kube.delete_node", new_callable = mock.AsyncMock)
    @mock.patch("k8zner.kube.drain_node", new_callable = mock.AsyncMock)
    async def test_worker_is_drained_before_deletion(self, drain_node, delete_node):
        cluster = complete_cluster(workers = dict(count = 1))
        status.update_node_phase(
            cluster,
            NodeRole.WORKER,
            "test-worker-1",
            NodePhase.FAILED,
            "no server found via cloud provider"
        )
        calls = []
        drain_node.side_effect = lambda client, name: calls.append(("drain_node", name))
        delete_node.side_effect = lambda client, name: calls.append(("delete_node", name))
        cloud = make_cloud()
        cloud.get_server.return_value = { "id": 5 }
        cloud.delete_server.side_effect = lambda id: calls.append(("delete_server", id))
        kube_client = mock.Mock()

        await make_reconciler(cluster, cloud, kube_client = kube_client).reconcile()

        self.assertEqual(
            calls,
            [
                ("drain_node", "test-worker-1"),
                ("delete_node", "test-worker-1"),
                ("delete_server", 5),
            ]
        )
        self.assertIs(drain_node.await_args.args[0], kube_client)


class TestUpgrade(unittest.IsolatedAsyncioTestCase):
    def make_cluster(self):
        cluster = complete_cluster()
        cluster.status.talos_version = "1.8.2"
        status.update_node_phase(
            cluster,
            NodeRole.CONTROL_PLANE,
            "test-control-plane-1",
            NodePhase.READY,
            "Kubernetes node is ready",
            public_ip = "203.0.113.10"
        )
        return cluster

    @mock.patch("k8zner.reconciler.UpgradeOrchestrator")
    async def test_successful_upgrade(self, orchestrator):
        orchestrator.return_value.run = mock.AsyncMock(
            return_value = UpgradeResult(upgraded = ["test-control-plane-1"])
        )
        cluster = self.make_cluster()
        save = mock.AsyncMock()
        recon = make_reconciler(cluster, save = save)

        await recon.upgrade(UpgradeOptions(talos_version = "1.8.3"))

        nodes = orchestrator.return_value.run.await_args.args[0]
        self.assertEqual([n.ip for n in nodes], ["203.0.113.10"])
        save.assert_awaited_once_with(cluster)
        self.assertEqual(cluster.status.upgrade.phase, UpgradePhase.SUCCEEDED)
        self.assertEqual(cluster.status.talos_version, "1.8.3")
        self.assertEqual(cluster.status.kubernetes_version, "1.31.2")

    @mock.patch("k8zner.reconciler.UpgradeOrchestrator")
    async def test_dry_run(self, orchestrator):
        orchestrator.return_value.run = mock.AsyncMock(
            return_value = UpgradeResult(plan = ["a: upgrade", "b: upgrade"])
        )
        cluster = self.make_cluster()
        save = mock.AsyncMock()

        await make_reconciler(cluster, save = save).upgrade(
            UpgradeOptions(talos_version = "1.8.3", dry_run = True)
        )

        save.assert_not_called()
        self.assertEqual(cluster.status.upgrade.phase, UpgradePhase.PLANNED)
        self.assertEqual(cluster.status.upgrade.message, "a: upgrade; b: upgrade")
        self.assertEqual(cluster.status.talos_version, "1.8.2")

    @mock.patch("k8zner.reconciler.UpgradeOrchestrator")
    async def test_aborted_upgrade(self, orchestrator):
        orchestrator.return_value.run = mock.AsyncMock(
            side_effect = UpgradeError("cluster is unhealthy")
        )
        cluster = self.make_cluster()

        with self.assertRaises(reconciler.ReconcileError):
            await make_reconciler(cluster).upgrade(UpgradeOptions(talos_version = "1.8.3"))

        self.assertEqual(cluster.status.upgrade.phase, UpgradePhase.FAILED)
        self.assertEqual(cluster.status.upgrade.message, "cluster is unhealthy")
        self.assertEqual(cluster.status.talos_version, "1.8.2")
        self.assertEqual(cluster.status.last_errors[-1].component, "upgrade")

    @mock.patch("k8zner.reconciler.UpgradeOrchestrator")
    async def test_failed_worker_fails_the_upgrade(self, orchestrator):
        orchestrator.return_value.run = mock.AsyncMock(
            return_value = UpgradeResult(failed = { "test-worker-1": "timed out" })
        )
        cluster = self.make_cluster()

        await make_reconciler(cluster).upgrade(UpgradeOptions(talos_version = "1.8.3"))

        self.assertEqual(cluster.status.upgrade.phase, UpgradePhase.FAILED)
        self.assertEqual(cluster.status.upgrade.message, "test-worker-1: timed out")
        self.assertEqual(cluster.status.talos_version, "1.8.2")
