import datetime as dt
import ipaddress

from easysemver import SEMVER_VERSION_REGEX
from kube_custom_resource import CustomResource, schema
from pydantic import Field, ValidationInfo, field_validator


class ControlPlaneSpec(schema.BaseModel):
    """
    The spec for the control plane nodes of the cluster.
    """

    count: schema.conint(ge=1) = Field(
        1, description="The number of control plane nodes."
    )
    size: schema.constr(min_length=1) = Field(
        "cx22", description="The server type to use for control plane nodes."
    )


class WorkerSpec(schema.BaseModel):
    """
    The spec for the worker nodes of the cluster.
    """

    count: schema.conint(ge=0) = Field(0, description="The number of worker nodes.")
    size: schema.constr(min_length=1) = Field(
        "cx22", description="The server type to use for worker nodes."
    )


class NetworkSpec(schema.BaseModel):
    """
    The spec for the private network of the cluster.
    """

    ipv4_cidr: ipaddress.IPv4Network = Field(
        ipaddress.IPv4Network("10.0.0.0/16"),
        description="The IP range of the private network.",
    )
    node_cidr: ipaddress.IPv4Network = Field(
        ipaddress.IPv4Network("10.0.1.0/24"),
        description="The subnet of the private network used for nodes.",
    )
    pod_cidr: ipaddress.IPv4Network = Field(
        ipaddress.IPv4Network("10.244.0.0/16"),
        description="The CIDR used for pod IPs.",
    )
    service_cidr: ipaddress.IPv4Network = Field(
        ipaddress.IPv4Network("10.96.0.0/12"),
        description="The CIDR used for service IPs.",
    )

    @field_validator("node_cidr")
    @classmethod
    def check_node_cidr_in_network(cls, v, info: ValidationInfo):
        network = info.data.get("ipv4_cidr")
        if network and not v.subnet_of(network):
            raise ValueError("must be a subnet of the network CIDR")
        return v


class FirewallSpec(schema.BaseModel):
    """
    The spec for the firewall of the cluster.
    """

    enabled: bool = Field(True, description="Indicates if a firewall is created.")
    allowed_api_sources: list[ipaddress.IPv4Network] = Field(
        default_factory=lambda: [ipaddress.IPv4Network("0.0.0.0/0")],
        description="The source ranges allowed to reach the Kubernetes and Talos APIs.",
    )


class PlacementGroupSpec(schema.BaseModel):
    """
    The spec for the placement group of the control plane nodes.
    """

    enabled: bool = Field(
        True,
        description="Indicates if control plane nodes are spread across hosts.",
    )


class KubernetesSpec(schema.BaseModel):
    """
    The spec for the Kubernetes version of the cluster.
    """

    version: schema.constr(pattern=SEMVER_VERSION_REGEX) = Field(
        ..., description="The Kubernetes version to run."
    )


class TalosSpec(schema.BaseModel):
    """
    The spec for the Talos installation of the nodes.
    """

    version: schema.constr(pattern=SEMVER_VERSION_REGEX) = Field(
        ..., description="The Talos version to run."
    )
    schematic_id: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The Talos image factory schematic to use, if any."
    )
    upgrade_stage: bool = Field(
        False,
        description="Indicates if upgrades are staged and applied on the next reboot.",
    )
    upgrade_force: bool = Field(
        False,
        description="Indicates if upgrades skip the etcd health checks made by Talos.",
    )


class AddonsSpec(schema.BaseModel):
    """
    The spec for the optional addons of the cluster.
    """

    metrics_server: bool = Field(
        True, description="Indicates if metrics-server should be installed."
    )
    cert_manager: bool = Field(
        False, description="Indicates if cert-manager should be installed."
    )
    traefik: bool = Field(
        False, description="Indicates if the Traefik ingress controller should be installed."
    )
    external_dns: bool = Field(
        False, description="Indicates if external-dns should be installed."
    )
    argocd: bool = Field(False, description="Indicates if Argo CD should be installed.")
    monitoring: bool = Field(
        False, description="Indicates if the monitoring stack should be installed."
    )


class BackupSpec(schema.BaseModel):
    """
    The spec for etcd backups of the cluster.
    """

    enabled: bool = Field(False, description="Indicates if etcd backups are enabled.")
    schedule: schema.constr(min_length=1) = Field(
        "0 * * * *", description="The cron schedule for backups."
    )
    s3_secret_name: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description="The name of the secret containing the S3 configuration for backups.",
        validate_default=True,
    )

    @field_validator("s3_secret_name")
    @classmethod
    def check_s3_secret_required(cls, v, info: ValidationInfo):
        if info.data.get("enabled") and not v:
            raise ValueError("must be given when backups are enabled")
        return v


class ClusterSpec(schema.BaseModel):
    """
    The spec for a k8zner cluster.
    """

    region: schema.constr(min_length=1) = Field(
        ..., description="The cloud provider location to create the cluster in."
    )
    credentials_secret_name: schema.constr(min_length=1) = Field(
        ..., description="The name of the secret containing the cluster credentials."
    )
    paused: bool = Field(
        False, description="Indicates if reconciliation should be paused."
    )
    control_planes: ControlPlaneSpec = Field(
        default_factory=ControlPlaneSpec,
        description="The control plane nodes of the cluster.",
    )
    workers: WorkerSpec = Field(
        default_factory=WorkerSpec, description="The worker nodes of the cluster."
    )
    network: NetworkSpec = Field(
        default_factory=NetworkSpec, description="The private network of the cluster."
    )
    firewall: FirewallSpec = Field(
        default_factory=FirewallSpec, description="The firewall of the cluster."
    )
    placement_group: PlacementGroupSpec = Field(
        default_factory=PlacementGroupSpec,
        description="The placement group for control plane nodes.",
    )
    kubernetes: KubernetesSpec = Field(
        ..., description="The Kubernetes configuration of the cluster."
    )
    talos: TalosSpec = Field(..., description="The Talos configuration of the nodes.")
    addons: AddonsSpec = Field(
        default_factory=AddonsSpec,
        description="Describes the optional addons that should be enabled for the cluster.",
    )
    backup: BackupSpec = Field(
        default_factory=BackupSpec, description="The etcd backup configuration."
    )


class ClusterPhase(str, schema.Enum):
    """
    The overall phase of the cluster.
    """

    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    FAILED = "Failed"


class ProvisioningPhase(str, schema.Enum):
    """
    The macro-phases that a cluster moves through, in order.
    """

    INFRASTRUCTURE = "Infrastructure"
    IMAGE = "Image"
    COMPUTE = "Compute"
    BOOTSTRAP = "Bootstrap"
    CNI = "CNI"
    ADDONS = "Addons"
    COMPLETE = "Complete"

    @property
    def position(self):
        return list(ProvisioningPhase).index(self)

    def next(self):
        """
        Returns the phase that follows this one, or None for the last phase.
        """
        phases = list(ProvisioningPhase)
        position = phases.index(self)
        return phases[position + 1] if position + 1 < len(phases) else None


class NodePhase(str, schema.Enum):
    """
    The lifecycle phase of a node in the cluster.
    """

    CREATING_SERVER = "CreatingServer"
    WAITING_FOR_IP = "WaitingForIP"
    WAITING_FOR_TALOS_API = "WaitingForTalosAPI"
    APPLYING_TALOS_CONFIG = "ApplyingTalosConfig"
    REBOOTING_WITH_CONFIG = "RebootingWithConfig"
    WAITING_FOR_K8S = "WaitingForK8s"
    NODE_INITIALIZING = "NodeInitializing"
    READY = "Ready"
    UNHEALTHY = "Unhealthy"
    DELETING_SERVER = "DeletingServer"
    FAILED = "Failed"


class NodeRole(str, schema.Enum):
    """
    The role of a node.
    """

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class AddonPhase(str, schema.Enum):
    """
    The install phase of an addon in the cluster.
    """

    NOT_INSTALLED = "NotInstalled"
    INSTALLING = "Installing"
    INSTALLED = "Installed"
    FAILED = "Failed"


class UpgradePhase(str, schema.Enum):
    """
    The phase of the most recent upgrade of the cluster.
    """

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PLANNED = "Planned"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class InfrastructureStatus(schema.BaseModel):
    """
    Identifiers of the cloud resources that belong to the cluster.
    """

    network_id: schema.Optional[int] = Field(None, description="The ID of the network.")
    firewall_id: schema.Optional[int] = Field(None, description="The ID of the firewall.")
    load_balancer_id: schema.Optional[int] = Field(
        None, description="The ID of the load balancer for the Kubernetes API."
    )
    load_balancer_ip: schema.Optional[str] = Field(
        None, description="The public IP of the load balancer for the Kubernetes API."
    )
    placement_group_id: schema.Optional[int] = Field(
        None, description="The ID of the placement group for control plane nodes."
    )
    ssh_key_id: schema.Optional[int] = Field(
        None, description="The ID of the SSH key installed on the servers."
    )
    snapshot_id: schema.Optional[int] = Field(
        None, description="The ID of the Talos snapshot used for the servers."
    )


class NodeStatus(schema.BaseModel):
    """
    The status of a node in the cluster.
    """

    name: schema.constr(min_length=1) = Field(..., description="The name of the node.")
    phase: NodePhase = Field(
        NodePhase.CREATING_SERVER.value, description="The phase of the node."
    )
    reason: schema.Optional[str] = Field(
        None, description="A human-readable reason for the phase."
    )
    server_id: schema.Optional[int] = Field(
        None, description="The ID of the server for the node."
    )
    public_ip: schema.Optional[str] = Field(
        None, description="The last known public IP of the node."
    )
    private_ip: schema.Optional[str] = Field(
        None, description="The last known private IP of the node."
    )
    phase_transition_time: schema.Optional[dt.datetime] = Field(
        None, description="The time at which the node entered its current phase."
    )


class NodeGroupStatus(schema.BaseModel):
    """
    The status of a group of nodes with the same role.
    """

    desired: schema.conint(ge=0) = Field(0, description="The desired number of nodes.")
    ready: schema.conint(ge=0) = Field(0, description="The number of ready nodes.")
    nodes: list[NodeStatus] = Field(
        default_factory=list, description="The nodes in the group."
    )


class AddonStatus(schema.BaseModel):
    """
    The status of an addon in the cluster.
    """

    phase: AddonPhase = Field(
        AddonPhase.NOT_INSTALLED.value, description="The phase of the addon."
    )
    installed: bool = Field(False, description="Indicates if the addon is installed.")
    healthy: bool = Field(False, description="Indicates if the addon is healthy.")
    retry_count: schema.conint(ge=0) = Field(
        0, description="The number of failed install attempts."
    )
    install_order: schema.Optional[int] = Field(
        None, description="The position of the addon in the install order."
    )
    started_at: schema.Optional[dt.datetime] = Field(
        None, description="The time at which the most recent install started."
    )
    duration: schema.Optional[int] = Field(
        None, description="The duration of the most recent install, in seconds."
    )
    message: schema.Optional[str] = Field(
        None, description="The message from the most recent install attempt."
    )


class PhaseRecord(schema.BaseModel):
    """
    A record of an attempt at a macro-phase.
    """

    phase: ProvisioningPhase = Field(..., description="The macro-phase.")
    started_at: dt.datetime = Field(..., description="The time the phase started.")
    ended_at: schema.Optional[dt.datetime] = Field(
        None, description="The time the phase ended."
    )
    duration: schema.Optional[int] = Field(
        None, description="The duration of the phase, in seconds."
    )
    error: schema.Optional[str] = Field(
        None, description="The most recent error during the phase."
    )


class ErrorRecord(schema.BaseModel):
    """
    An error observed while reconciling the cluster.
    """

    time: dt.datetime = Field(..., description="The time of the error.")
    phase: ProvisioningPhase = Field(
        ..., description="The macro-phase during which the error occurred."
    )
    component: schema.constr(min_length=1) = Field(
        ..., description="The component that produced the error."
    )
    message: str = Field(..., description="The error message.")


class UpgradeStatus(schema.BaseModel):
    """
    The status of the most recent upgrade of the cluster.
    """

    phase: UpgradePhase = Field(
        UpgradePhase.PENDING.value, description="The phase of the upgrade."
    )
    talos_version: schema.Optional[str] = Field(
        None, description="The target Talos version of the upgrade."
    )
    kubernetes_version: schema.Optional[str] = Field(
        None, description="The target Kubernetes version of the upgrade."
    )
    message: schema.Optional[str] = Field(
        None, description="The outcome or plan of the upgrade."
    )
    started_at: schema.Optional[dt.datetime] = Field(
        None, description="The time the upgrade started."
    )
    finished_at: schema.Optional[dt.datetime] = Field(
        None, description="The time the upgrade finished."
    )


class ClusterStatus(schema.BaseModel, extra="allow"):
    """
    The status of the cluster.
    """

    phase: ClusterPhase = Field(
        ClusterPhase.PROVISIONING.value, description="The overall phase of the cluster."
    )
    provisioning_phase: ProvisioningPhase = Field(
        ProvisioningPhase.INFRASTRUCTURE.value,
        description="The current provisioning macro-phase.",
    )
    infrastructure: InfrastructureStatus = Field(
        default_factory=InfrastructureStatus,
        description="The cloud resources of the cluster.",
    )
    control_plane_endpoint: schema.Optional[str] = Field(
        None, description="The endpoint of the Kubernetes API."
    )
    kubeconfig_secret_name: schema.Optional[str] = Field(
        None,
        description="The name of the secret containing the kubeconfig file, if known.",
    )
    bootstrapped: bool = Field(
        False, description="Indicates if etcd has been bootstrapped."
    )
    control_planes: NodeGroupStatus = Field(
        default_factory=NodeGroupStatus,
        description="The status of the control plane nodes.",
    )
    workers: NodeGroupStatus = Field(
        default_factory=NodeGroupStatus, description="The status of the worker nodes."
    )
    addons: schema.Dict[str, AddonStatus] = Field(
        default_factory=dict,
        description="The status of the addons for the cluster, indexed by addon name.",
    )
    phase_history: list[PhaseRecord] = Field(
        default_factory=list, description="The history of macro-phase attempts."
    )
    last_errors: list[ErrorRecord] = Field(
        default_factory=list, description="The most recent errors, oldest first."
    )
    last_reconcile_time: schema.Optional[dt.datetime] = Field(
        None, description="The time of the most recent reconcile pass."
    )
    observed_generation: schema.Optional[int] = Field(
        None, description="The generation of the spec that was last reconciled."
    )
    talos_version: schema.Optional[str] = Field(
        None, description="The Talos version that the nodes are running."
    )
    kubernetes_version: schema.Optional[str] = Field(
        None, description="The Kubernetes version of the cluster."
    )
    upgrade: schema.Optional[UpgradeStatus] = Field(
        None, description="The status of the most recent upgrade."
    )
    estimated_seconds_remaining: schema.Optional[int] = Field(
        None, description="The estimated time until provisioning completes."
    )


class Cluster(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Region",
            "type": "string",
            "jsonPath": ".spec.region",
        },
        {
            "name": "Kubernetes Version",
            "type": "string",
            "jsonPath": ".spec.kubernetes.version",
        },
        {
            "name": "Talos Version",
            "type": "string",
            "jsonPath": ".spec.talos.version",
            "priority": 1,
        },
        {
            "name": "Paused",
            "type": "boolean",
            "jsonPath": ".spec.paused",
        },
        {
            "name": "Phase",
            "type": "string",
            "jsonPath": ".status.phase",
        },
        {
            "name": "Provisioning",
            "type": "string",
            "jsonPath": ".status.provisioningPhase",
        },
        {
            "name": "Control Planes",
            "type": "integer",
            "jsonPath": ".status.controlPlanes.ready",
            "priority": 1,
        },
        {
            "name": "Workers",
            "type": "integer",
            "jsonPath": ".status.workers.ready",
            "priority": 1,
        },
    ],
):
    """
    A Kubernetes cluster on Hetzner Cloud running Talos.
    """

    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)
