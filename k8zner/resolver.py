"""
Derives the lifecycle phase of a node from an observation snapshot.

The rules are evaluated in order and the first match wins. The order encodes the
priority between contradictory signals: the cloud provider decides whether the node
exists at all, Kubernetes is trusted over Talos and Talos is trusted over the
server status. The final rule matches everything, so resolution is total.
"""

import typing as t

from .models.v1alpha1 import NodePhase
from .observer import NodeStateInfo


class Rule(t.NamedTuple):
    """
    A single entry in the decision table.
    """
    #: A short name for the rule, used in logs and tests
    tag: str
    #: Returns true if the rule applies to the observation
    matches: t.Callable[[NodeStateInfo], bool]
    #: The phase for matching observations
    phase: NodePhase
    #: Returns the reason for matching observations
    reason: t.Callable[[NodeStateInfo], str]


def _running_reason(info):
    if info.server_ip:
        return f"server is running at {info.server_ip}, waiting for Talos API"
    else:
        return "server is running, waiting for Talos API"


RULES: t.Tuple[Rule, ...] = (
    Rule(
        "server-missing",
        lambda info: not info.server_exists,
        NodePhase.FAILED,
        lambda info: "no server found via cloud provider",
    ),
    Rule(
        "node-ready",
        lambda info: info.k8s_node_exists and info.k8s_node_ready,
        NodePhase.READY,
        lambda info: "Kubernetes node is ready",
    ),
    Rule(
        "node-initializing",
        lambda info: info.k8s_node_exists and info.talos_kubelet_running,
        NodePhase.NODE_INITIALIZING,
        lambda info: "Kubernetes node registered, waiting for it to become ready",
    ),
    Rule(
        "node-registered",
        lambda info: info.k8s_node_exists,
        NodePhase.WAITING_FOR_K8S,
        lambda info: "Kubernetes node registered, waiting for kubelet",
    ),
    Rule(
        "kubelet-running",
        lambda info: info.talos_configured and info.talos_kubelet_running,
        NodePhase.WAITING_FOR_K8S,
        lambda info: "kubelet is running, waiting for node to register",
    ),
    Rule(
        "talos-configured",
        lambda info: info.talos_configured,
        NodePhase.REBOOTING_WITH_CONFIG,
        lambda info: "Talos config applied, waiting for kubelet to start",
    ),
    Rule(
        "talos-maintenance",
        lambda info: info.talos_api_reachable and info.talos_in_maintenance_mode,
        NodePhase.WAITING_FOR_TALOS_API,
        lambda info: "Talos is in maintenance mode, waiting for config",
    ),
    Rule(
        "talos-reachable",
        lambda info: info.talos_api_reachable,
        NodePhase.APPLYING_TALOS_CONFIG,
        lambda info: "Talos API is reachable, applying config",
    ),
    Rule(
        "server-running",
        lambda info: info.server_status == "running",
        NodePhase.WAITING_FOR_TALOS_API,
        _running_reason,
    ),
    Rule(
        "server-starting",
        lambda info: info.server_status == "starting",
        NodePhase.WAITING_FOR_IP,
        lambda info: "server is starting, waiting for IP",
    ),
    Rule(
        "default",
        lambda info: True,
        NodePhase.CREATING_SERVER,
        lambda info: f"server is being created (status: {info.server_status or 'unknown'})",
    ),
)


def match(info: NodeStateInfo) -> Rule:
    """
    Returns the first rule that matches the given observation.
    """
    return next(rule for rule in RULES if rule.matches(info))


def resolve(info: NodeStateInfo) -> t.Tuple[NodePhase, str]:
    """
    Returns the phase for the given observation and the reason for it.
    """
    rule = match(info)
    return rule.phase, rule.reason(info)
