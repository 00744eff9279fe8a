import typing as t

from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    AfterValidator,
    Field,
    FilePath,
    TypeAdapter,
    ValidationInfo,
    confloat,
    conint,
    constr,
    field_validator,
)
from pydantic import (
    AnyHttpUrl as PyAnyHttpUrl,
)

#: Type for a string that validates as a URL
AnyHttpUrl = t.Annotated[
    str, AfterValidator(lambda v: str(TypeAdapter(PyAnyHttpUrl).validate_python(v)))
]


class HelmClientConfiguration(Section):
    """
    Configuration for the Helm client used to render addon charts.
    """

    #: The default timeout to use with Helm commands
    #: Can be an integer number of seconds or a duration string like 5m, 5h
    default_timeout: int | constr(min_length=1) = "5m"
    #: The executable to use
    #: By default, we assume Helm is on the PATH
    executable: constr(min_length=1) = "helm"
    #: The maximum number of revisions to retain in the history of releases
    history_max_revisions: int = 10
    #: Indicates whether to verify TLS when pulling charts
    insecure_skip_tls_verify: bool = False
    #: The directory to use for unpacking charts
    #: By default, the system temporary directory is used
    unpack_directory: str | None = None


class ObserverConfiguration(Section):
    """
    Timeouts, in seconds, for the individual checks made when observing a node.
    """

    #: Timeout for the cloud provider server lookup
    cloud_timeout: confloat(gt=0) = 10
    #: Timeout for the TCP connection check of the Talos API port
    talos_port_timeout: confloat(gt=0) = 5
    #: Timeout for calls to the Talos API
    talos_api_timeout: confloat(gt=0) = 10
    #: Timeout for Kubernetes API calls
    kubernetes_timeout: confloat(gt=0) = 10


class HCloudConfiguration(Section):
    """
    Configuration for the Hetzner Cloud API client.
    """

    #: The base URL of the API
    endpoint: AnyHttpUrl = "https://api.hetzner.cloud/v1"
    #: The timeout for individual HTTP requests
    request_timeout: confloat(gt=0) = 30
    #: Retry policy for transient transport errors
    retries: conint(ge=0) = 5
    retry_initial_delay: confloat(gt=0) = 1
    retry_max_delay: confloat(gt=0) = 30
    retry_multiplier: confloat(ge=1) = 2
    #: The number of items to request per page when listing
    page_size: conint(gt=0, le=50) = 50
    #: The network zone for the cluster subnet
    network_zone: constr(min_length=1) = "eu-central"
    #: The load balancer type for the Kubernetes API
    load_balancer_type: constr(min_length=1) = "lb11"


class TalosConfiguration(Section):
    """
    Configuration for the Talos API client.
    """

    #: The talosctl executable to use
    #: By default, we assume talosctl is on the PATH
    executable: constr(min_length=1) = "talosctl"
    #: The port that the Talos API listens on
    api_port: conint(gt=0) = 50000
    #: The maximum time a single talosctl command may take
    command_timeout: confloat(gt=0) = 300
    #: The time that a health check may wait for the cluster to become healthy
    health_timeout: confloat(gt=0) = 120
    #: The installer images used for upgrades
    installer_image: constr(min_length=1) = "ghcr.io/siderolabs/installer"
    factory_installer_image: constr(min_length=1) = "factory.talos.dev/installer"


class ChartConfiguration(Section):
    """
    The Helm chart to use for an addon.
    """

    #: The repository that the chart lives in
    repo: AnyHttpUrl
    #: The name of the chart
    name: constr(min_length=1)
    #: The version of the chart to use
    version: constr(min_length=1)


def default_charts():
    return {
        "cilium": ChartConfiguration(
            repo="https://helm.cilium.io",
            name="cilium",
            version="1.16.5",
        ),
        "hcloud-ccm": ChartConfiguration(
            repo="https://charts.hetzner.cloud",
            name="hcloud-cloud-controller-manager",
            version="1.21.1",
        ),
        "hcloud-csi": ChartConfiguration(
            repo="https://charts.hetzner.cloud",
            name="hcloud-csi",
            version="2.12.0",
        ),
        "metrics-server": ChartConfiguration(
            repo="https://kubernetes-sigs.github.io/metrics-server",
            name="metrics-server",
            version="3.12.2",
        ),
        "cert-manager": ChartConfiguration(
            repo="https://charts.jetstack.io",
            name="cert-manager",
            version="v1.16.2",
        ),
        "traefik": ChartConfiguration(
            repo="https://traefik.github.io/charts",
            name="traefik",
            version="33.2.1",
        ),
        "external-dns": ChartConfiguration(
            repo="https://kubernetes-sigs.github.io/external-dns",
            name="external-dns",
            version="1.15.0",
        ),
        "argocd": ChartConfiguration(
            repo="https://argoproj.github.io/argo-helm",
            name="argo-cd",
            version="7.7.11",
        ),
        "monitoring": ChartConfiguration(
            repo="https://prometheus-community.github.io/helm-charts",
            name="kube-prometheus-stack",
            version="67.4.0",
        ),
    }


class AddonsConfiguration(Section):
    """
    Configuration for addon installation.
    """

    #: The charts to use for Helm-based addons, indexed by addon name
    charts: dict[str, ChartConfiguration] = Field(default_factory=default_charts)
    #: Additional Helm values for addons, indexed by addon name
    #: These are merged over the values that the operator generates
    values: dict[str, dict[str, t.Any]] = Field(default_factory=dict)
    #: The maximum time to wait for the workloads of an addon to become ready
    verify_timeout: confloat(gt=0) = 300
    #: The interval at which workloads are polled while waiting
    poll_interval: confloat(gt=0) = 10
    #: The number of times a failed install is retried before the addon is failed
    max_retries: conint(ge=0) = 3
    #: The delay between install attempts
    retry_delay: confloat(ge=0) = 10
    #: The image used for Talos etcd backups
    talos_backup_image: constr(min_length=1) = "ghcr.io/siderolabs/talos-backup:v0.1.0-beta.3"


class UpgradeConfiguration(Section):
    """
    Configuration for rolling upgrades.
    """

    #: The maximum time to wait for a node to come back after an upgrade
    node_timeout: confloat(gt=0) = 600
    #: The time to wait after triggering an upgrade before polling the node
    initial_wait: confloat(ge=0) = 30
    #: The interval at which an upgrading node is polled
    poll_interval: confloat(gt=0) = 10
    #: The number of health checks made after each control plane upgrade
    health_check_retries: conint(ge=1) = 3
    #: The delay between health checks
    health_check_delay: confloat(ge=0) = 10


class BackoffConfiguration(Section):
    """
    Exponential backoff applied after failed reconcile passes.
    """

    initial: confloat(gt=0) = 5
    maximum: confloat(gt=0) = 300
    multiplier: confloat(ge=1) = 2

    def delay(self, failures):
        """
        Returns the delay to use after the given number of consecutive failures.
        """
        if failures < 1:
            return self.initial
        return min(self.initial * self.multiplier ** (failures - 1), self.maximum)


class MetricsConfiguration(Section):
    """
    Configuration for the metrics server.
    """

    #: The address and port to bind the metrics server to
    address: constr(min_length=1) = "0.0.0.0"
    port: conint(gt=0) = 8080


class PeeringConfiguration(Section):
    """
    Configuration for kopf peering, which keeps a single operator active.
    """

    #: The name of the peering object
    name: constr(min_length=1) = "k8zner-operator"
    #: Indicates whether the peering object is cluster-scoped
    clusterwide: bool = True
    #: Indicates whether the operator should refuse to run without peering
    mandatory: bool = True
    #: The priority of this operator instance
    priority: int = 0


class WebhookConfiguration(Section):
    """
    Configuration for the internal webhook server.
    """

    #: The port to run the webhook server on
    port: conint(ge=1000) = 8443
    #: Indicates whether kopf should manage the webhook configurations
    managed: bool = False
    #: The path to the TLS certificate to use
    certfile: FilePath | None = Field(None, validate_default=False)
    #: The path to the key for the TLS certificate
    keyfile: FilePath | None = Field(None, validate_default=False)
    #: The host for the webhook server (required for self-signed certificate generation)
    host: constr(min_length=1) | None = Field(None, validate_default=False)

    @field_validator("certfile")
    @classmethod
    def validate_certfile(cls, v, info: ValidationInfo):
        """
        Validate that certfile is specified when configs are not managed.
        """
        if not info.data.get("managed") and v is None:
            raise ValueError("required when webhook configurations are not managed")
        return v

    @field_validator("keyfile")
    @classmethod
    def validate_keyfile(cls, v, info: ValidationInfo):
        """
        Validate that keyfile is specified when certfile is present.
        """
        if info.data.get("certfile") is not None and v is None:
            raise ValueError("required when certfile is given")
        return v

    @field_validator("host")
    @classmethod
    def validate_host(cls, v, info: ValidationInfo):
        """
        Validate that host is specified when there is no certificate specified.
        """
        if info.data.get("certfile") is None and v is None:
            raise ValueError("required when certfile is not given")
        return v


def default_node_phase_timeouts():
    return {
        "WaitingForIP": 300,
        "ApplyingTalosConfig": 300,
    }


class Configuration(
    BaseConfiguration,
    default_path="/etc/k8zner/operator.yaml",
    path_env_var="K8ZNER_CONFIG",
    env_prefix="K8ZNER",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the cluster CRDs
    api_group: constr(min_length=1) = "k8zner.io"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["k8zner"]
    )

    #: The prefix to use for operator annotations
    annotation_prefix: str = "k8zner.io"

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "k8zner-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The number of seconds between reconcile passes for a settled cluster
    reconcile_interval: confloat(gt=0) = 30
    #: The number of seconds before the next pass when a macro-phase has advanced
    progress_interval: confloat(ge=0) = 2
    #: The backoff applied after a failed reconcile pass
    error_backoff: BackoffConfiguration = Field(default_factory=BackoffConfiguration)

    #: The maximum number of errors retained in the status of a cluster
    max_last_errors: conint(gt=0) = 10

    #: The number of seconds a node may spend in a phase before it is failed,
    #: indexed by phase name
    node_phase_timeouts: dict[str, conint(gt=0)] = Field(
        default_factory=default_node_phase_timeouts
    )
    #: The timeout for phases that are not listed in node_phase_timeouts
    default_node_phase_timeout: conint(gt=0) = 600
    #: Indicates whether failed worker nodes are deleted and recreated
    replace_failed_workers: bool = True
    #: Indicates whether failed control plane nodes are removed from etcd, deleted
    #: and recreated, as long as the remaining control planes keep quorum
    replace_failed_control_planes: bool = True

    #: The Helm client configuration
    helm_client: HelmClientConfiguration = Field(
        default_factory=HelmClientConfiguration
    )

    #: Node observation timeouts
    observer: ObserverConfiguration = Field(default_factory=ObserverConfiguration)

    #: The Hetzner Cloud client configuration
    hcloud: HCloudConfiguration = Field(default_factory=HCloudConfiguration)

    #: The Talos client configuration
    talos: TalosConfiguration = Field(default_factory=TalosConfiguration)

    #: The addon configuration
    addons: AddonsConfiguration = Field(default_factory=AddonsConfiguration)

    #: The upgrade configuration
    upgrade: UpgradeConfiguration = Field(default_factory=UpgradeConfiguration)

    #: The metrics server configuration
    metrics: MetricsConfiguration = Field(default_factory=MetricsConfiguration)

    #: The webhook configuration
    webhook: WebhookConfiguration = Field(default_factory=WebhookConfiguration)

    #: The peering configuration
    peering: PeeringConfiguration = Field(default_factory=PeeringConfiguration)


settings = Configuration()
