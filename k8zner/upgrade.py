import asyncio
import dataclasses
import logging
import typing as t

import easysemver

from . import talos
from .config import settings
from .models.v1alpha1 import NodeRole
from .retry import retry_fixed


logger = logging.getLogger(__name__)


#: Errors from a node that mean the operation could not be completed
NODE_ERRORS = (talos.TalosError, asyncio.TimeoutError, OSError)


class UpgradeError(Exception):
    """
    Raised when an upgrade must be aborted.
    """


@dataclasses.dataclass(frozen = True)
class UpgradeOptions:
    """
    Options for an upgrade.
    """
    #: The Talos version to upgrade the nodes to
    talos_version: str
    #: The Kubernetes version to upgrade to, if any
    kubernetes_version: t.Optional[str] = None
    #: The image factory schematic for the installer image, if any
    schematic_id: t.Optional[str] = None
    #: Indicates whether upgrades are staged and applied on reboot
    stage: bool = False
    #: Indicates whether Talos should skip its own etcd checks
    force: bool = False
    #: Indicates whether to only report what would be upgraded
    dry_run: bool = False
    #: Indicates whether to skip the health check after each control plane
    skip_health_check: bool = False


@dataclasses.dataclass(frozen = True)
class UpgradeNode:
    """
    A node to be considered for upgrade.
    """
    name: str
    role: NodeRole
    ip: str


@dataclasses.dataclass
class UpgradeResult:
    """
    The outcome of an upgrade.
    """
    #: The steps of the upgrade, as human-readable descriptions
    plan: t.List[str] = dataclasses.field(default_factory = list)
    #: The names of the nodes that were upgraded
    upgraded: t.List[str] = dataclasses.field(default_factory = list)
    #: The names of the nodes that were already at the target version
    skipped: t.List[str] = dataclasses.field(default_factory = list)
    #: The errors for nodes that failed to upgrade, indexed by node name
    failed: t.Dict[str, str] = dataclasses.field(default_factory = dict)
    #: Indicates whether Kubernetes was upgraded
    kubernetes_upgraded: bool = False


class UpgradeOrchestrator:
    """
    Upgrades Talos and Kubernetes on the nodes of a cluster.

    Control plane nodes are upgraded one at a time, and the cluster must pass a
    health check after each one before the next is started. Worker nodes are also
    upgraded one at a time, but a failed worker does not stop the upgrade.
    Kubernetes is upgraded last, once.
    """
    def __init__(self, talos_client):
        self.talos = talos_client

    def _validate(self, nodes, options):
        try:
            easysemver.Version(talos.normalise_version(options.talos_version))
            if options.kubernetes_version:
                easysemver.Version(talos.normalise_version(options.kubernetes_version))
        except (TypeError, ValueError) as exc:
            raise UpgradeError(f"invalid target version: {exc}")
        if not any(node.role == NodeRole.CONTROL_PLANE for node in nodes):
            raise UpgradeError("cluster has no control plane nodes")

    async def _current_version(self, node):
        return talos.normalise_version(await self.talos.get_version(node.ip))

    async def _plan(self, nodes, options, result):
        """
        Fills in the plan for a dry run, using read-only calls only.
        """
        target = talos.normalise_version(options.talos_version)
        for node in nodes:
            try:
                current = await self._current_version(node)
            except NODE_ERRORS as exc:
                result.plan.append(f"{node.name}: unable to determine version ({exc})")
                continue
            if current == target:
                result.skipped.append(node.name)
                result.plan.append(f"{node.name}: already at Talos {target}")
            else:
                result.plan.append(f"{node.name}: upgrade Talos from {current} to {target}")
        if options.kubernetes_version:
            result.plan.append(
                f"upgrade Kubernetes to {talos.normalise_version(options.kubernetes_version)}"
            )

    async def _wait_ready(self, node, target):
        """
        Waits for the node to report the target version after an upgrade.
        """
        await asyncio.sleep(settings.upgrade.initial_wait)

        async def poll():
            while True:
                try:
                    if await self._current_version(node) == target:
                        return
                except NODE_ERRORS as exc:
                    logger.debug("node %s is not ready yet: %s", node.name, exc)
                await asyncio.sleep(settings.upgrade.poll_interval)

        try:
            await asyncio.wait_for(poll(), settings.upgrade.node_timeout)
        except asyncio.TimeoutError:
            raise UpgradeError(
                f"node {node.name} did not become ready at Talos {target} "
                f"within {settings.upgrade.node_timeout}s"
            )

    async def _upgrade_node(self, node, options, result):
        """
        Upgrades a single node unless it is already at the target version.

        Returns true if the node was upgraded.
        """
        target = talos.normalise_version(options.talos_version)
        current = await self._current_version(node)
        if current == target:
            logger.info("node %s is already at Talos %s", node.name, target)
            result.skipped.append(node.name)
            return False
        logger.info("upgrading node %s from Talos %s to %s", node.name, current, target)
        await self.talos.upgrade(
            node.ip,
            talos.installer_image(target, options.schematic_id),
            stage = options.stage,
            force = options.force
        )
        await self._wait_ready(node, target)
        return True

    async def _health_check(self, node):
        try:
            await retry_fixed(
                self.talos.health,
                node.ip,
                attempts = settings.upgrade.health_check_retries,
                delay = settings.upgrade.health_check_delay,
                errors = NODE_ERRORS
            )
        except NODE_ERRORS as exc:
            raise UpgradeError(f"cluster is unhealthy after upgrading {node.name}: {exc}")

    async def _upgrade_kubernetes(self, control_planes, options, result):
        version = talos.normalise_version(options.kubernetes_version)
        for node in control_planes:
            try:
                await self.talos.get_version(node.ip)
            except NODE_ERRORS as exc:
                logger.warning("control plane %s is not reachable: %s", node.name, exc)
                continue
            logger.info("upgrading Kubernetes to %s using %s", version, node.name)
            try:
                await self.talos.upgrade_kubernetes(node.ip, version)
            except NODE_ERRORS as exc:
                raise UpgradeError(f"Kubernetes upgrade failed: {exc}")
            result.kubernetes_upgraded = True
            return
        raise UpgradeError("no control plane node is reachable for the Kubernetes upgrade")

    async def run(self, nodes, options):
        """
        Upgrades the given nodes as described by the options and returns the result.

        Raises UpgradeError if the upgrade is aborted.
        """
        self._validate(nodes, options)
        control_planes = [n for n in nodes if n.role == NodeRole.CONTROL_PLANE]
        workers = [n for n in nodes if n.role == NodeRole.WORKER]
        result = UpgradeResult()
        if options.dry_run:
            await self._plan(control_planes + workers, options, result)
            return result
        for node in control_planes:
            try:
                upgraded = await self._upgrade_node(node, options, result)
            except NODE_ERRORS as exc:
                raise UpgradeError(f"upgrade of control plane {node.name} failed: {exc}")
            if not upgraded:
                continue
            if not options.skip_health_check:
                await self._health_check(node)
            result.upgraded.append(node.name)
        for node in workers:
            try:
                if await self._upgrade_node(node, options, result):
                    result.upgraded.append(node.name)
            except (UpgradeError, *NODE_ERRORS) as exc:
                logger.warning("upgrade of worker %s failed: %s", node.name, exc)
                result.failed[node.name] = str(exc)
        if options.kubernetes_version:
            await self._upgrade_kubernetes(control_planes, options, result)
        return result
