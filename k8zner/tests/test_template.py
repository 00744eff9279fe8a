import unittest

from k8zner.template import default_loader
from k8zner.utils import generate_ssh_public_key, mergeconcat

from .fixtures import make_cluster


class TestTalosPatch(unittest.TestCase):
    def test_worker_patch(self):
        patch = default_loader.talos_patch("worker", "test-worker-1", cluster = make_cluster())

        self.assertEqual(patch["machine"]["network"]["hostname"], "test-worker-1")
        self.assertEqual(
            patch["machine"]["kubelet"]["nodeIP"]["validSubnets"],
            ["10.0.1.0/24"]
        )
        self.assertEqual(patch["cluster"]["network"]["cni"], { "name": "none" })
        self.assertTrue(patch["cluster"]["proxy"]["disabled"])
        self.assertNotIn("etcd", patch["cluster"])

    def test_control_plane_patch(self):
        patch = default_loader.talos_patch(
            "controlplane",
            "test-control-plane-1",
            cluster = make_cluster()
        )

        self.assertEqual(patch["cluster"]["etcd"]["advertisedSubnets"], ["10.0.1.0/24"])
        self.assertNotIn("kubernetesTalosAPIAccess", patch["machine"]["features"])

    def test_backups_allow_talos_api_access(self):
        cluster = make_cluster(backup = dict(enabled = True, s3SecretName = "backup"))

        control_plane = default_loader.talos_patch("controlplane", "cp", cluster = cluster)
        worker = default_loader.talos_patch("worker", "worker", cluster = cluster)

        access = control_plane["machine"]["features"]["kubernetesTalosAPIAccess"]
        self.assertEqual(access["allowedRoles"], ["os:etcd:backup"])
        self.assertNotIn("kubernetesTalosAPIAccess", worker["machine"]["features"])


class TestAddonValues(unittest.TestCase):
    def test_metrics_server_replicas(self):
        single = default_loader.addon_values("metrics-server", cluster = make_cluster())
        multi = default_loader.addon_values(
            "metrics-server",
            cluster = make_cluster(workers = dict(count = 3))
        )

        self.assertEqual(single["replicas"], 1)
        self.assertEqual(multi["replicas"], 2)
        self.assertIn("--kubelet-insecure-tls", single["args"])


class TestUtils(unittest.TestCase):
    def test_mergeconcat(self):
        merged = mergeconcat(
            { "a": { "b": 1, "c": [1] }, "d": "x" },
            { "a": { "c": [2] } },
            { "a": { "b": 3 }, "d": None }
        )

        self.assertEqual(merged, { "a": { "b": 3, "c": [1, 2] }, "d": "x" })

    def test_ssh_public_key(self):
        key = generate_ssh_public_key()

        self.assertTrue(key.startswith("ssh-ed25519 "))
        self.assertNotEqual(key, generate_ssh_public_key())
