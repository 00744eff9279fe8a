import asyncio
import dataclasses
import logging
import os
import pathlib
import re
import tempfile

import yaml

from .config import settings


logger = logging.getLogger(__name__)


#: Fragments of the errors returned by a node in maintenance mode for API calls
#: that are only available once the node is configured
MAINTENANCE_MODE_MESSAGES = ("maintenance mode", "not implemented")

#: Fragments of the error returned when etcd has already been bootstrapped
ALREADY_BOOTSTRAPPED_MESSAGES = ("alreadyexists", "already exists", "etcd data directory is not empty")

VERSION_REGEX = re.compile(r"(?:Tag:\s*|Talos\s+)(v?\d+\.\d+\.\d+[^\s]*)")


class TalosError(Exception):
    """
    Raised when an error occurs with a talosctl command.
    """
    def __init__(self, returncode, stdout, stderr):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(stderr.strip() or f"talosctl exited with code {returncode}")


def normalise_version(version):
    """
    Returns the given version without a leading "v".
    """
    return version[1:] if version.startswith("v") else version


def installer_image(version, schematic_id = None):
    """
    Returns the installer image reference for the given Talos version.

    Images for a schematic come from the image factory.
    """
    tag = f"v{normalise_version(version)}"
    if schematic_id:
        return f"{settings.talos.factory_installer_image}/{schematic_id}:{tag}"
    else:
        return f"{settings.talos.installer_image}:{tag}"


def _target(ip):
    return ["--nodes", ip, "--endpoints", ip]


def _service_states(output):
    """
    Returns the state of each service in the output of a service listing, indexed
    by service id.
    """
    states = {}
    # The columns are NODE, SERVICE, STATE, HEALTH, ...
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 3:
            states[parts[1]] = parts[2]
    return states


@dataclasses.dataclass(frozen = True)
class MachineState:
    """
    The configuration state of a node as reported by its Talos API.

    When neither flag is set, the node answered but its state is not known.
    """
    #: Indicates whether the node is waiting for a machine config
    maintenance: bool = False
    #: Indicates whether the node has a machine config applied
    configured: bool = False


class Client:
    """
    Client for the Talos API of cluster nodes, using talosctl.

    Must be used as an async context manager, which provides a private working
    directory for the talosconfig, secrets and machine configs.
    """
    def __init__(self, talosconfig = None, executable = None):
        self.talosconfig = talosconfig
        self.executable = executable or settings.talos.executable
        self._workdir = None
        self._talosconfig_path = None

    async def __aenter__(self):
        self._workdir = tempfile.TemporaryDirectory(prefix = "k8zner-talos-")
        if self.talosconfig:
            self._talosconfig_path = self._write("talosconfig", self.talosconfig)
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self._workdir.cleanup()
        self._workdir = None
        self._talosconfig_path = None

    def _write(self, name, content):
        path = pathlib.Path(self._workdir.name) / name
        path.write_text(content)
        os.chmod(path, 0o600)
        return str(path)

    async def _run(self, *args, input = None, insecure = False):
        command = [self.executable, *args]
        if not insecure and self._talosconfig_path:
            command.extend(["--talosconfig", self._talosconfig_path])
        logger.debug("Executing talosctl command '%s'", " ".join(args[:2]))
        # Only make stdin a pipe if we need to
        stdin = asyncio.subprocess.PIPE if input is not None else None
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin = stdin,
            stdout = asyncio.subprocess.PIPE,
            stderr = asyncio.subprocess.PIPE
        )
        if isinstance(input, str):
            input = input.encode()
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input),
                settings.talos.command_timeout
            )
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if proc.returncode == 0:
            return stdout.decode()
        else:
            raise TalosError(proc.returncode, stdout.decode(), stderr.decode())

    async def is_reachable(self, ip, timeout):
        """
        Tests if the Talos API port of the given node accepts connections.
        """
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(ip, settings.talos.api_port),
                timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        await writer.wait_closed()
        return True

    async def machine_state(self, ip):
        """
        Returns the configuration state of the given node as a MachineState.

        A configured node only accepts mutual TLS, so it rejects the insecure version
        request. A node that answers the insecure request is in maintenance mode unless
        an authenticated service listing shows the kubelet.
        """
        try:
            await self._run("version", "--insecure", *_target(ip), insecure = True)
        except TalosError as exc:
            message = exc.stderr.lower()
            if any(fragment in message for fragment in MAINTENANCE_MODE_MESSAGES):
                return MachineState(maintenance = True)
            else:
                return MachineState(configured = True)
        try:
            output = await self._run("service", *_target(ip))
        except TalosError as exc:
            logger.debug("unable to list services for node %s: %s", ip, exc)
            return MachineState(maintenance = True)
        if "kubelet" in _service_states(output):
            return MachineState(configured = True)
        else:
            return MachineState()

    async def kubelet_running(self, ip):
        """
        Tests if the kubelet service on the given node is running.
        """
        output = await self._run("service", "kubelet", *_target(ip))
        for line in output.splitlines():
            parts = line.split(None, 1)
            if len(parts) == 2 and parts[0] == "STATE":
                return parts[1].strip() == "Running"
        return False

    async def get_version(self, ip):
        """
        Returns the Talos version that the given node is running, without a leading "v".
        """
        output = await self._run("version", "--short", *_target(ip))
        # Only consider the server section, as the client version is also printed
        _, _, server = output.partition("Server:")
        match = VERSION_REGEX.search(server)
        if not match:
            raise TalosError(0, output, f"unable to determine Talos version for {ip}")
        return normalise_version(match.group(1))

    async def generate_secrets(self):
        """
        Generates a new secrets bundle for a cluster.
        """
        path = pathlib.Path(self._workdir.name) / "generated-secrets.yaml"
        await self._run("gen", "secrets", "--output-file", str(path), "--force", insecure = True)
        return path.read_text()

    async def _generate(
        self,
        output_type,
        cluster_name,
        endpoint,
        secrets,
        kubernetes_version,
        talos_version,
        patches
    ):
        secrets_path = self._write("secrets.yaml", secrets)
        talos_version = normalise_version(talos_version)
        # The config contract is given as major.minor
        contract = "v" + ".".join(talos_version.split(".")[:2])
        args = [
            "gen",
            "config",
            cluster_name,
            endpoint,
            "--with-secrets",
            secrets_path,
            "--output-types",
            output_type,
            "--output",
            "-",
            "--kubernetes-version",
            normalise_version(kubernetes_version),
            "--talos-version",
            contract,
            "--with-docs=false",
            "--with-examples=false",
        ]
        for index, patch in enumerate(patches):
            patch_path = self._write(f"{output_type}-patch-{index}.yaml", yaml.safe_dump(patch))
            args.extend(["--config-patch", f"@{patch_path}"])
        return await self._run(*args, insecure = True)

    async def generate_config(
        self,
        role,
        cluster_name,
        endpoint,
        *,
        secrets,
        kubernetes_version,
        talos_version,
        patches = ()
    ):
        """
        Generates the machine config for nodes with the given role, either
        "controlplane" or "worker".
        """
        return await self._generate(
            role,
            cluster_name,
            endpoint,
            secrets,
            kubernetes_version,
            talos_version,
            patches
        )

    async def generate_talosconfig(
        self,
        cluster_name,
        endpoint,
        *,
        secrets,
        kubernetes_version,
        talos_version
    ):
        """
        Generates a client config for the cluster.
        """
        return await self._generate(
            "talosconfig",
            cluster_name,
            endpoint,
            secrets,
            kubernetes_version,
            talos_version,
            ()
        )

    async def apply_config(self, ip, config, insecure = False, patches = ()):
        """
        Applies the given machine config to the node.

        Nodes in maintenance mode only accept an insecure connection.
        """
        config_path = self._write(f"{ip}-config.yaml", config)
        args = ["apply-config", *_target(ip), "--file", config_path]
        if insecure:
            args.append("--insecure")
        for index, patch in enumerate(patches):
            patch_path = self._write(f"{ip}-patch-{index}.yaml", yaml.safe_dump(patch))
            args.extend(["--config-patch", f"@{patch_path}"])
        await self._run(*args, insecure = insecure)

    async def bootstrap(self, ip):
        """
        Bootstraps etcd on the given control plane node.

        Returns false if etcd was already bootstrapped.
        """
        try:
            await self._run("bootstrap", *_target(ip))
        except TalosError as exc:
            message = exc.stderr.lower()
            if any(fragment in message for fragment in ALREADY_BOOTSTRAPPED_MESSAGES):
                return False
            else:
                raise
        return True

    async def kubeconfig(self, ip):
        """
        Returns an admin kubeconfig for the cluster, fetched from the given control
        plane node.
        """
        path = pathlib.Path(self._workdir.name) / "kubeconfig"
        await self._run("kubeconfig", str(path), "--force", "--merge=false", *_target(ip))
        return path.read_text()

    async def upgrade(self, ip, image, stage = False, force = False):
        """
        Triggers an upgrade of the given node to the given installer image without
        waiting for it to complete.
        """
        args = ["upgrade", *_target(ip), "--image", image, "--wait=false"]
        if stage:
            args.append("--stage")
        if force:
            args.append("--force")
        await self._run(*args)

    async def upgrade_kubernetes(self, ip, version):
        """
        Upgrades the Kubernetes components of the cluster using the given control
        plane node.
        """
        await self._run("upgrade-k8s", *_target(ip), "--to", normalise_version(version))

    async def health(self, ip):
        """
        Runs the cluster health checks from the given control plane node.
        """
        await self._run(
            "health",
            *_target(ip),
            "--wait-timeout",
            f"{int(settings.talos.health_timeout)}s"
        )

    async def etcd_members(self, ip):
        """
        Returns the members of the etcd cluster as seen by the given control plane
        node, as dicts with the id, hostname and peer URLs of each member.
        """
        output = await self._run("etcd", "members", *_target(ip))
        members = []
        # The columns are NODE, ID, HOSTNAME, PEER URLS, CLIENT URLS, LEARNER
        for line in output.splitlines()[1:]:
            parts = line.split()
            if len(parts) >= 4:
                members.append(
                    {
                        "id": parts[1],
                        "hostname": parts[2],
                        "peer_urls": parts[3].split(","),
                    }
                )
        return members

    async def remove_etcd_member(self, ip, member_id):
        """
        Removes the etcd member with the given id, using the given control plane node.
        """
        await self._run("etcd", "remove-member", member_id, *_target(ip))
