from .cluster import (
    AddonPhase,
    AddonsSpec,
    AddonStatus,
    BackupSpec,
    Cluster,
    ClusterPhase,
    ClusterSpec,
    ClusterStatus,
    ControlPlaneSpec,
    ErrorRecord,
    FirewallSpec,
    InfrastructureStatus,
    KubernetesSpec,
    NetworkSpec,
    NodeGroupStatus,
    NodePhase,
    NodeRole,
    NodeStatus,
    PhaseRecord,
    PlacementGroupSpec,
    ProvisioningPhase,
    TalosSpec,
    UpgradePhase,
    UpgradeStatus,
    WorkerSpec,
)
