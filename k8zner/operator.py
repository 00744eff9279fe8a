import asyncio
import contextlib
import functools
import logging
import sys

import kopf
import httpx
import pydantic

from easykube import Configuration, ApiError
import easysemver
from kube_custom_resource import CustomResourceRegistry

from . import hcloud, kube, models, status, talos
from .addons import AddonContext, AddonOrchestrator
from .config import settings
from .errors import ConfigurationError
from .models import v1alpha1 as api
from .reconciler import (
    HCLOUD_TOKEN_KEY,
    KUBECONFIG_KEY,
    Reconciler,
    ReconcileError,
    cloud_labels,
    ensure_credentials,
    load_backup_config,
    pending_upgrade,
)

logger = logging.getLogger(__name__)


# Create an easykube client from the environment
ekclient = (
    Configuration
        .from_environment()
        .async_client(default_field_manager = settings.easykube_field_manager)
)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings.
    """
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.finalizer = f"{settings.annotation_prefix}/finalizer"
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.annotation_prefix
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.annotation_prefix,
        key = "last-handled-configuration",
    )
    kopf_settings.admission.server = kopf.WebhookServer(
        addr = "0.0.0.0",
        port = settings.webhook.port,
        host = settings.webhook.host,
        certfile = settings.webhook.certfile,
        pkeyfile = settings.webhook.keyfile
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    if settings.webhook.managed:
        kopf_settings.admission.managed = f"webhook.{settings.api_group}"
    # Only one operator instance should be reconciling at any time
    kopf_settings.peering.name = settings.peering.name
    kopf_settings.peering.clusterwide = settings.peering.clusterwide
    kopf_settings.peering.mandatory = settings.peering.mandatory
    kopf_settings.peering.priority = settings.peering.priority
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force = True)
        except Exception:
            logger.exception("error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group)
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Check to see if the APIs for the CRDs are up
    # If they are not, the kopf watches will not start properly so we exit and get restarted
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await ekclient.get(f"/apis/{api_version}/{crd.plural_name}")
        except Exception:
            logger.exception(
                "api for %s.%s not available - exiting",
                crd.plural_name,
                crd.api_group
            )
            sys.exit(1)


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    await ekclient.aclose()


async def ekresource_for_model(model, subresource = None):
    """
    Returns an easykube resource for the given model.
    """
    api = ekclient.api(f"{settings.api_group}/{model._meta.version}")
    resource = model._meta.plural_name
    if subresource:
        resource = f"{resource}/{subresource}"
    return await api.resource(resource)


async def save_cluster_status(cluster):
    """
    Save the status of the given cluster.
    """
    # Make sure that the status is finalised before saving
    status.finalise(cluster)
    ekresource = await ekresource_for_model(api.Cluster, "status")
    data = await ekresource.replace(
        cluster.metadata.name,
        {
            # Include the resource version for optimistic concurrency
            "metadata": { "resourceVersion": cluster.metadata.resource_version },
            "status": cluster.status.model_dump(
                mode = "json",
                by_alias = True,
                exclude_defaults = True
            ),
        },
        namespace = cluster.metadata.namespace
    )
    # Store the new resource version
    cluster.metadata.resource_version = data["metadata"]["resourceVersion"]


def model_handler(model, register_fn, /, include_instance = True, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            if include_instance and "instance" not in handler_kwargs:
                handler_kwargs["instance"] = model.model_validate(handler_kwargs["body"])
            try:
                return await func(**handler_kwargs)
            except ApiError as exc:
                if exc.status_code == 409:
                    # When a handler fails with a 409, we want to retry quickly
                    raise kopf.TemporaryError(str(exc), delay = 5)
                else:
                    raise
        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)
    return decorator


async def fetch_model_instance(model, name, namespace = None):
    """
    Fetches and parses the specified model instance, or None if the instance does not exist.
    """
    ekresource = await ekresource_for_model(model)
    try:
        data = await ekresource.fetch(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            return None
        else:
            raise
    else:
        return model.model_validate(data)


@model_handler(
    api.Cluster,
    kopf.on.validate,
    # We want to validate the instance ourselves
    include_instance = False,
    id = "validate-cluster"
)
async def validate_cluster(name, namespace, meta, spec, operation, **kwargs):
    """
    Validates cluster objects.
    """
    if operation not in {"CREATE", "UPDATE"}:
        return
    try:
        spec = api.ClusterSpec.model_validate(spec)
    except pydantic.ValidationError as exc:
        raise kopf.AdmissionError(str(exc), code = 400)
    # The referenced secrets must exist, unless the cluster is deleting
    if not meta.get("deletionTimestamp"):
        secret = await kube.fetch_secret(ekclient, spec.credentials_secret_name, namespace)
        if secret is None:
            raise kopf.AdmissionError("specified credentials secret does not exist", code = 400)
        if spec.backup.enabled:
            secret = await kube.fetch_secret(ekclient, spec.backup.s3_secret_name, namespace)
            if secret is None:
                raise kopf.AdmissionError("specified backup secret does not exist", code = 400)
    # The rest of the validation only applies to existing clusters
    current_cluster = await fetch_model_instance(api.Cluster, name, namespace = namespace)
    if not current_cluster:
        return
    # The versions that the nodes are running may not be downgraded
    for component, current_version, next_version in [
        ("Talos", current_cluster.status.talos_version, spec.talos.version),
        ("Kubernetes", current_cluster.status.kubernetes_version, spec.kubernetes.version),
    ]:
        if not current_version:
            continue
        current_version = easysemver.Version(talos.normalise_version(current_version))
        next_version = easysemver.Version(talos.normalise_version(next_version))
        if next_version < current_version:
            raise kopf.AdmissionError(
                f"{component} version {next_version} would be a downgrade "
                f"from {current_version}",
                code = 400
            )


async def reconcile_once(instance, meta):
    """
    Runs a single reconcile pass for the cluster, followed by an upgrade if one is
    pending. Returns true if the provisioning phase advanced.
    """
    async with talos.Client() as talos_client:
        credentials = await ensure_credentials(ekclient, instance, talos_client)
    async with contextlib.AsyncExitStack() as stack:
        cloud = await stack.enter_async_context(hcloud.Client(credentials.hcloud_token))
        talos_client = await stack.enter_async_context(talos.Client(credentials.talosconfig))
        kube_client = None
        addons = None
        if instance.status.kubeconfig_secret_name:
            secret = await kube.fetch_secret(
                ekclient,
                instance.status.kubeconfig_secret_name,
                instance.metadata.namespace
            )
            if secret is not None:
                kube_client = await stack.enter_async_context(
                    kube.client_from_kubeconfig(kube.secret_data(secret)[KUBECONFIG_KEY])
                )
                addons = AddonOrchestrator(
                    kube_client,
                    AddonContext(
                        hcloud_token = credentials.hcloud_token,
                        network_id = instance.status.infrastructure.network_id,
                        backup_s3 = await load_backup_config(ekclient, instance)
                    ),
                    # Persist addon transitions before potentially long installs
                    on_transition = lambda cluster, *_: save_cluster_status(cluster)
                )
        reconciler = Reconciler(
            instance,
            cloud = cloud,
            talos_client = talos_client,
            credentials = credentials,
            management_client = ekclient,
            kube_client = kube_client,
            addons = addons,
            save = save_cluster_status
        )
        advanced = await reconciler.reconcile(meta.get("generation"))
        if not advanced:
            options = pending_upgrade(instance, meta.get("annotations", {}))
            if options:
                await reconciler.upgrade(options)
        return advanced


@model_handler(
    api.Cluster,
    kopf.daemon,
    include_instance = False,
    cancellation_timeout = 1
)
async def reconcile_cluster(name, namespace, meta, stopped, logger, **kwargs):
    """
    Daemon that reconciles a cluster until it is deleted or the operator stops.
    """
    failures = 0
    while not stopped:
        instance = await fetch_model_instance(api.Cluster, name, namespace = namespace)
        if instance is None:
            return
        if instance.spec.paused:
            logger.info("reconciliation is paused - no action taken")
            await stopped.wait(settings.reconcile_interval)
            continue
        try:
            advanced = await reconcile_once(instance, meta)
        except (ConfigurationError, talos.TalosError) as exc:
            # These happen before the reconcile pass so are not in the status yet
            logger.error("unable to reconcile cluster: %s", exc)
            status.record_error(instance, "configuration", exc)
            failures += 1
            delay = settings.error_backoff.delay(failures)
        except ReconcileError as exc:
            logger.warning("reconcile pass failed: %s", exc)
            failures += 1
            delay = settings.error_backoff.delay(failures)
        else:
            failures = 0
            delay = settings.progress_interval if advanced else settings.reconcile_interval
        await save_cluster_status(instance)
        await stopped.wait(delay)


@model_handler(api.Cluster, kopf.on.delete)
async def on_cluster_delete(logger, instance, name, namespace, **kwargs):
    """
    Executes whenever a cluster is deleted.
    """
    # If cluster reconciliation is paused, there is nothing else to do
    if instance.spec.paused:
        logger.info("reconciliation is paused - no action taken")
        return
    secret = await kube.fetch_secret(ekclient, instance.spec.credentials_secret_name, namespace)
    token = kube.secret_data(secret).get(HCLOUD_TOKEN_KEY) if secret else None
    if not token:
        raise kopf.TemporaryError("cloud credentials are not available", delay = 60)
    try:
        async with hcloud.Client(token) as cloud:
            remaining = await cloud.delete_resources(cloud_labels(instance))
    except (hcloud.CloudError, httpx.HTTPError) as exc:
        # Resources that are still in use cannot be deleted until their users are gone
        raise kopf.TemporaryError(f"error deleting cloud resources: {exc}", delay = 15)
    if remaining:
        raise kopf.TemporaryError(
            f"waiting for {remaining} cloud resources to be deleted",
            delay = 10
        )
    logger.info("all cloud resources deleted")
