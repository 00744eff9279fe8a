import datetime as dt
import logging

from .config import settings
from .models.v1alpha1 import (
    AddonPhase,
    ClusterPhase,
    ErrorRecord,
    NodePhase,
    NodeRole,
    NodeStatus,
    PhaseRecord,
    ProvisioningPhase,
    UpgradePhase,
)

logger = logging.getLogger(__name__)


#: The order in which nodes move through the phases during provisioning
NODE_PHASE_ORDER = [
    NodePhase.CREATING_SERVER,
    NodePhase.WAITING_FOR_IP,
    NodePhase.WAITING_FOR_TALOS_API,
    NodePhase.APPLYING_TALOS_CONFIG,
    NodePhase.REBOOTING_WITH_CONFIG,
    NodePhase.WAITING_FOR_K8S,
    NodePhase.NODE_INITIALIZING,
    NodePhase.READY,
]

#: Nodes in these phases are no longer observed
TERMINAL_NODE_PHASES = {NodePhase.FAILED, NodePhase.DELETING_SERVER}

#: Median durations of the macro-phases in seconds, used to estimate the remaining time
DEFAULT_TIMINGS = {
    ProvisioningPhase.INFRASTRUCTURE: 30,
    ProvisioningPhase.IMAGE: 120,
    ProvisioningPhase.COMPUTE: 60,
    ProvisioningPhase.BOOTSTRAP: 180,
    ProvisioningPhase.CNI: 120,
    ProvisioningPhase.ADDONS: 300,
}

#: Bounds for the factor applied to the timings based on observed performance
MIN_PERFORMANCE_SCALE = 0.6
MAX_PERFORMANCE_SCALE = 3.0


def _now():
    return dt.datetime.now(dt.timezone.utc)


def node_group(cluster, role):
    """
    Returns the node group status for the given role.
    """
    if NodeRole(role) == NodeRole.CONTROL_PLANE:
        return cluster.status.control_planes
    else:
        return cluster.status.workers


def iter_nodes(cluster):
    """
    Yields (role, node) for every node in the status, control planes first.
    """
    for role in NodeRole:
        for node in node_group(cluster, role).nodes:
            yield role, node


def find_node(cluster, role, name):
    return next((n for n in node_group(cluster, role).nodes if n.name == name), None)


def remove_node(cluster, role, name):
    group = node_group(cluster, role)
    group.nodes = [n for n in group.nodes if n.name != name]


def phase_position(phase):
    """
    Returns the position of the given phase in the provisioning order, or None.
    """
    phase = NodePhase(phase)
    return NODE_PHASE_ORDER.index(phase) if phase in NODE_PHASE_ORDER else None


def phase_at_least(phase, minimum):
    """
    Returns true if the given phase is at or beyond the minimum in the provisioning
    order. Unhealthy nodes have been ready, so they count as beyond any phase.
    """
    if NodePhase(phase) == NodePhase.UNHEALTHY:
        return True
    position = phase_position(phase)
    return position is not None and position >= phase_position(minimum)


def next_node_phase(current, observed):
    """
    Returns the phase to record for a node in the current phase given the observed
    phase, or None if the current phase should be held.

    Phases only move forward, except for the explicit failure transitions. A ready
    node that no longer observes as ready becomes unhealthy.
    """
    current = NodePhase(current)
    observed = NodePhase(observed)
    if observed == current:
        return current
    if current in TERMINAL_NODE_PHASES:
        return None
    if observed in {NodePhase.FAILED, NodePhase.READY, NodePhase.DELETING_SERVER}:
        return observed
    if current == NodePhase.READY:
        return NodePhase.UNHEALTHY
    if current == NodePhase.UNHEALTHY:
        return observed
    if phase_position(observed) > phase_position(current):
        return observed
    return None


def update_node_phase(
    cluster,
    role,
    name,
    phase,
    reason,
    *,
    server_id = None,
    public_ip = None,
    private_ip = None,
    now = None
):
    """
    Updates the phase of a node in the status, adding the node if it is not present.

    The transition time is only set when the phase changes. Returns true if the
    phase changed.
    """
    now = now or _now()
    group = node_group(cluster, role)
    node = find_node(cluster, role, name)
    if node is None:
        node = NodeStatus(name = name, phase = phase, phase_transition_time = now)
        group.nodes.append(node)
        changed = True
    else:
        changed = NodePhase(node.phase) != NodePhase(phase)
        if changed:
            node.phase = NodePhase(phase)
            node.phase_transition_time = now
    if changed or node.reason is None:
        node.reason = reason
    # Addresses and IDs are only ever replaced with known values
    if server_id:
        node.server_id = server_id
    if public_ip:
        node.public_ip = public_ip
    if private_ip:
        node.private_ip = private_ip
    if changed:
        logger.info(
            "node %s (%s) is now %s: %s",
            name,
            NodeRole(role).value,
            NodePhase(phase).value,
            reason
        )
    return changed


def record_error(cluster, component, message, now = None):
    """
    Appends an error to the bounded error log of the cluster.
    """
    cluster.status.last_errors.append(
        ErrorRecord(
            time = now or _now(),
            phase = cluster.status.provisioning_phase,
            component = component,
            message = str(message)
        )
    )
    # Discard the oldest errors once the log is full
    overflow = len(cluster.status.last_errors) - settings.max_last_errors
    if overflow > 0:
        del cluster.status.last_errors[:overflow]


def open_phase_record(cluster):
    """
    Returns the record for the current macro-phase attempt, or None.
    """
    history = cluster.status.phase_history
    if history and history[-1].ended_at is None:
        return history[-1]
    return None


def record_phase_error(cluster, component, message, now = None):
    """
    Records an error that prevented the current macro-phase from progressing.
    """
    record = open_phase_record(cluster)
    if record:
        record.error = str(message)
    record_error(cluster, component, message, now)


def initialise(cluster, generation = None, now = None):
    """
    Initialise the status of the cluster for a reconcile pass.
    """
    now = now or _now()
    if not cluster.status.phase_history:
        phase = ProvisioningPhase(cluster.status.provisioning_phase)
        if phase != ProvisioningPhase.COMPLETE:
            cluster.status.phase_history.append(PhaseRecord(phase = phase, started_at = now))
    cluster.status.control_planes.desired = cluster.spec.control_planes.count
    cluster.status.workers.desired = cluster.spec.workers.count
    if generation is not None:
        cluster.status.observed_generation = generation


def advance(cluster, now = None):
    """
    Moves the cluster to the next macro-phase, closing the record for the current
    phase and opening one for the next.

    Returns the new phase, or None if the cluster is already complete.
    """
    now = now or _now()
    current = ProvisioningPhase(cluster.status.provisioning_phase)
    following = current.next()
    if following is None:
        return None
    record = open_phase_record(cluster)
    if record:
        record.ended_at = now
        record.duration = int((now - record.started_at).total_seconds())
    cluster.status.provisioning_phase = following
    if following != ProvisioningPhase.COMPLETE:
        cluster.status.phase_history.append(PhaseRecord(phase = following, started_at = now))
    logger.info(
        "cluster %s moved from %s to %s",
        cluster.metadata.name,
        current.value,
        following.value
    )
    return following


def quorum(members):
    """
    Returns the number of etcd members required for a majority.
    """
    return members // 2 + 1


def update_ready_counts(cluster):
    """
    Recomputes the number of ready nodes in each group.
    """
    for role in NodeRole:
        group = node_group(cluster, role)
        group.ready = sum(1 for n in group.nodes if NodePhase(n.phase) == NodePhase.READY)


def phase_timeout(phase):
    """
    Returns the number of seconds that a node may spend in the given phase.
    """
    return settings.node_phase_timeouts.get(
        NodePhase(phase).value,
        settings.default_node_phase_timeout
    )


def check_stuck_nodes(cluster, now = None):
    """
    Fails nodes that have spent longer than the timeout in a provisioning phase.

    Returns a list of (role, name) for the nodes that were failed.
    """
    now = now or _now()
    stuck = []
    for role, node in list(iter_nodes(cluster)):
        phase = NodePhase(node.phase)
        if phase_position(phase) is None or phase == NodePhase.READY:
            continue
        if node.phase_transition_time is None:
            continue
        elapsed = int((now - node.phase_transition_time).total_seconds())
        timeout = phase_timeout(phase)
        if elapsed > timeout:
            update_node_phase(
                cluster,
                role,
                node.name,
                NodePhase.FAILED,
                f"stuck in {phase.value} for {elapsed}s (timeout: {timeout}s)",
                now = now
            )
            stuck.append((role, node.name))
    return stuck


def performance_scale(cluster, now = None):
    """
    Returns a factor comparing the observed durations of the macro-phases with the
    default timings, e.g. 1.5 when phases take 50% longer than expected.
    """
    now = now or _now()
    expected_total = actual_total = 0
    for record in cluster.status.phase_history:
        expected = DEFAULT_TIMINGS.get(ProvisioningPhase(record.phase))
        if not expected:
            continue
        if record.ended_at is not None:
            expected_total += expected
            actual_total += (record.ended_at - record.started_at).total_seconds()
        else:
            # An overrunning phase is folded in straight away
            elapsed = (now - record.started_at).total_seconds()
            if elapsed > expected:
                expected_total += expected
                actual_total += elapsed
    if not expected_total or not actual_total:
        return 1.0
    return min(max(actual_total / expected_total, MIN_PERFORMANCE_SCALE), MAX_PERFORMANCE_SCALE)


def estimate_remaining(cluster, now = None):
    """
    Returns the estimated number of seconds until provisioning completes, or None
    once the cluster is complete.
    """
    now = now or _now()
    current = ProvisioningPhase(cluster.status.provisioning_phase)
    if current == ProvisioningPhase.COMPLETE:
        return None
    scale = performance_scale(cluster, now)
    record = open_phase_record(cluster)
    elapsed = (now - record.started_at).total_seconds() if record else 0
    remaining = max(0, DEFAULT_TIMINGS[current] * scale - elapsed)
    phase = current.next()
    while phase is not None and phase in DEFAULT_TIMINGS:
        remaining += DEFAULT_TIMINGS[phase] * scale
        phase = phase.next()
    return int(remaining)


def _reconcile_cluster_phase(cluster):
    """
    Sets the overall cluster phase based on the component phases.
    """
    failed_control_planes = any(
        NodePhase(n.phase) == NodePhase.FAILED
        for n in cluster.status.control_planes.nodes
    )
    failed_addons = any(
        AddonPhase(a.phase) == AddonPhase.FAILED
        for a in cluster.status.addons.values()
    )
    upgrade = cluster.status.upgrade
    failed_upgrade = upgrade is not None and UpgradePhase(upgrade.phase) == UpgradePhase.FAILED
    if failed_control_planes or failed_addons or failed_upgrade:
        cluster.status.phase = ClusterPhase.FAILED
    elif ProvisioningPhase(cluster.status.provisioning_phase) == ProvisioningPhase.COMPLETE:
        cluster.status.phase = ClusterPhase.RUNNING
    else:
        cluster.status.phase = ClusterPhase.PROVISIONING


def finalise(cluster, now = None):
    """
    Apply final derived elements to the status.
    """
    now = now or _now()
    update_ready_counts(cluster)
    _reconcile_cluster_phase(cluster)
    cluster.status.estimated_seconds_remaining = estimate_remaining(cluster, now)
    cluster.status.last_reconcile_time = now
