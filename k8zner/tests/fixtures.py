from k8zner.models import v1alpha1 as api


def make_cluster(name = "test", status = None, **spec):
    """
    Returns a cluster with the given spec overrides, using the camelCase names.
    """
    data = dict(
        apiVersion = "k8zner.io/v1alpha1",
        kind = "Cluster",
        metadata = dict(name = name, namespace = "tenant1"),
        spec = dict(
            region = "nbg1",
            credentialsSecretName = "test-credentials",
            kubernetes = dict(version = "1.31.2"),
            talos = dict(version = "1.8.3"),
            **spec
        ),
    )
    if status is not None:
        data["status"] = status
    return api.Cluster(**data)
