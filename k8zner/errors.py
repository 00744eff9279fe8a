class ConfigurationError(Exception):
    """
    Raised when a cluster cannot be reconciled as configured, e.g. because its
    credentials are missing or its addons have unmet dependencies.

    This is always raised before any change is made to the cluster.
    """


class ObservationError(Exception):
    """
    Raised when the state of a node could not be determined.
    """
    def __init__(self, node_name, message):
        self.node_name = node_name
        super().__init__(f"unable to observe node {node_name}: {message}")
