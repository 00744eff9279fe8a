import jinja2
import yaml

from .config import settings


def toyaml(obj):
    return yaml.safe_dump(obj, default_flow_style = False)


class Loader:
    """
    Class for returning objects created by rendering YAML templates from this package.
    """
    def __init__(self, **globals):
        # Create the package loader for the parent module of this one
        loader = jinja2.PackageLoader(self.__module__.rsplit(".", maxsplit = 1)[0])
        self.env = jinja2.Environment(
            loader = loader,
            autoescape = False,
            # Missing parameters should fail the render rather than produce empty values
            undefined = jinja2.StrictUndefined
        )
        self.env.globals.update(globals)
        self.env.filters["toyaml"] = toyaml

    def load(self, template, **params):
        """
        Render the specified template with the given params, load the result as
        YAML and return it.
        """
        return yaml.safe_load(self.env.get_template(template).render(**params))

    def addon_values(self, name, **params):
        """
        Returns the Helm values for the named addon.
        """
        return self.load(f"addons/{name}.yaml", **params) or {}

    def talos_patch(self, role, hostname, **params):
        """
        Returns the Talos machine config patch for a node with the given role and
        hostname.
        """
        return self.load("talos/patch.yaml", role = role, hostname = hostname, **params)


default_loader = Loader(settings = settings)
