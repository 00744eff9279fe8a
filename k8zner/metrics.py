import asyncio
import functools
import logging

import easykube
from aiohttp import web

from .config import settings


logger = logging.getLogger(__name__)


class Metric:
    # The prefix for the metric
    prefix = None
    # The suffix for the metric
    suffix = None
    # The type of the metric - info or gauge
    type = "info"
    # The description of the metric
    description = None

    def __init__(self):
        self._objs = []

    def add_obj(self, obj):
        self._objs.append(obj)

    @property
    def name(self):
        return f"{self.prefix}_{self.suffix}"

    def labels(self, obj):
        """The labels for the given object."""
        return {**self.common_labels(obj), **self.extra_labels(obj)}

    def common_labels(self, obj):
        """Common labels for the object."""
        return {}

    def extra_labels(self, obj):
        """Extra labels for the object."""
        return {}

    def value(self, obj):
        """The value for the given object."""
        return 1

    def records(self):
        """Returns the records for the metric, i.e. a list of (labels, value) tuples."""
        for obj in self._objs:
            yield self.labels(obj), self.value(obj)


class ClusterMetric(Metric):
    prefix = "k8zner_cluster"

    def common_labels(self, obj):
        return {
            "cluster_namespace": obj["metadata"]["namespace"],
            "cluster_name": obj["metadata"]["name"],
        }


def _status(obj):
    return obj.get("status") or {}


class ClusterPhase(ClusterMetric):
    suffix = "phase"
    description = "Cluster phase"

    def extra_labels(self, obj):
        return {"phase": _status(obj).get("phase", "Unknown")}


class ClusterProvisioningPhase(ClusterMetric):
    suffix = "provisioning_phase"
    description = "Cluster provisioning macro-phase"

    def extra_labels(self, obj):
        return {"phase": _status(obj).get("provisioningPhase", "Unknown")}


class ClusterVersions(ClusterMetric):
    suffix = "versions"
    description = "The Talos and Kubernetes versions of the cluster"

    def extra_labels(self, obj):
        return {
            "talos_version": _status(obj).get("talosVersion", ""),
            "kube_version": _status(obj).get("kubernetesVersion", ""),
        }


class ClusterPaused(ClusterMetric):
    suffix = "paused"
    type = "gauge"
    description = "Indicates whether reconciliation of the cluster is paused"

    def value(self, obj):
        return 1 if obj.get("spec", {}).get("paused", False) else 0


class ClusterEstimatedSecondsRemaining(ClusterMetric):
    suffix = "estimated_seconds_remaining"
    type = "gauge"
    description = "The estimated time until provisioning completes"

    def value(self, obj):
        return _status(obj).get("estimatedSecondsRemaining") or 0


class ClusterReadyNodes(ClusterMetric):
    suffix = "ready_nodes"
    type = "gauge"
    description = "The number of ready nodes in each group"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            for role, key in [("control-plane", "controlPlanes"), ("worker", "workers")]:
                group = _status(obj).get(key, {})
                yield {**labels, "role": role}, group.get("ready", 0)


class ClusterDesiredNodes(ClusterMetric):
    suffix = "desired_nodes"
    type = "gauge"
    description = "The desired number of nodes in each group"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            for role, key in [("control-plane", "controlPlanes"), ("worker", "workers")]:
                group = _status(obj).get(key, {})
                yield {**labels, "role": role}, group.get("desired", 0)


class ClusterNodePhase(ClusterMetric):
    suffix = "node_phase"
    description = "Cluster node phase"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            for role, key in [("control-plane", "controlPlanes"), ("worker", "workers")]:
                for node in _status(obj).get(key, {}).get("nodes", []):
                    node_labels = {
                        **labels,
                        "node": node["name"],
                        "role": role,
                        "phase": node.get("phase", "Unknown"),
                    }
                    yield node_labels, 1


class ClusterAddonPhase(ClusterMetric):
    suffix = "addon_phase"
    description = "Cluster addon phase"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            for name, addon in _status(obj).get("addons", {}).items():
                addon_labels = {
                    **labels,
                    "addon": name,
                    "phase": addon.get("phase", "Unknown"),
                }
                yield addon_labels, 1


class ClusterErrorCount(ClusterMetric):
    suffix = "error_count"
    type = "gauge"
    description = "The number of recent errors recorded for the cluster"

    def value(self, obj):
        return len(_status(obj).get("lastErrors", []))


def escape(content):
    """Escape the given content for use in metric output."""
    return content.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def format_value(value):
    """Formats a value for output, e.g. using Go formatting."""
    formatted = repr(value)
    dot = formatted.find(".")
    if value > 0 and dot > 6:
        mantissa = f"{formatted[0]}.{formatted[1:dot]}{formatted[dot + 1:]}".rstrip(
            "0."
        )
        return f"{mantissa}e+0{dot - 1}"
    else:
        return formatted


def render_openmetrics(*metrics):
    """Renders the metrics using OpenMetrics text format."""
    output = []
    for metric in metrics:
        if metric.description:
            output.append(f"# HELP {metric.name} {escape(metric.description)}\n")
        output.append(f"# TYPE {metric.name} {metric.type}\n")

        for labels, value in metric.records():
            if labels:
                labelstr = "{{{0}}}".format(
                    ",".join([f'{k}="{escape(v)}"' for k, v in sorted(labels.items())])
                )
            else:
                labelstr = ""
            output.append(f"{metric.name}{labelstr} {format_value(value)}\n")
    output.append("# EOF\n")

    return (
        "application/openmetrics-text; version=1.0.0; charset=utf-8",
        "".join(output).encode("utf-8"),
    )


METRICS = {
    "clusters": [
        ClusterPhase,
        ClusterProvisioningPhase,
        ClusterVersions,
        ClusterPaused,
        ClusterEstimatedSecondsRemaining,
        ClusterReadyNodes,
        ClusterDesiredNodes,
        ClusterNodePhase,
        ClusterAddonPhase,
        ClusterErrorCount,
    ],
}


async def metrics_handler(ekclient, request):
    """Produce metrics for the operator."""
    metrics = []
    ekapi = await ekclient.api_preferred_version(settings.api_group)
    for resource, metric_classes in METRICS.items():
        ekresource = await ekapi.resource(resource)
        resource_metrics = [klass() for klass in metric_classes]
        async for obj in ekresource.list(all_namespaces=True):
            for metric in resource_metrics:
                metric.add_obj(obj)
        metrics.extend(resource_metrics)

    content_type, content = render_openmetrics(*metrics)
    return web.Response(headers={"Content-Type": content_type}, body=content)


async def metrics_server():
    """Launch a lightweight HTTP server to serve the metrics endpoint."""
    ekclient = easykube.Configuration.from_environment().async_client()

    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, ekclient))])

    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()

    site = web.TCPSite(
        runner,
        settings.metrics.address,
        settings.metrics.port,
        shutdown_timeout=1.0,
    )
    await site.start()
    logger.info(
        "serving metrics on %s:%s", settings.metrics.address, settings.metrics.port
    )

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
        await ekclient.aclose()


def main():
    """Runs the metrics server until it is interrupted."""
    asyncio.run(metrics_server())


if __name__ == "__main__":
    main()
