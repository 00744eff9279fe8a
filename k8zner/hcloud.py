import logging

import httpx

from easykube import rest
from easykube.flow import flow

from .config import settings
from .retry import retry_transient


logger = logging.getLogger(__name__)


class CloudError(httpx.HTTPStatusError):
    """
    Raised when the Hetzner Cloud API returns an error.
    """
    def __init__(self, source):
        try:
            error = source.response.json()["error"]
        except (ValueError, KeyError, TypeError):
            code = "unknown"
            message = source.response.reason_phrase
        else:
            code = error.get("code", "unknown")
            message = error.get("message", "")
        super().__init__(
            f"[{source.response.status_code}] {code}: {message}",
            request = source.request,
            response = source.response
        )
        self.status_code = source.response.status_code
        self.code = code


class Auth(httpx.Auth):
    """
    Authenticator class for Hetzner Cloud API tokens.
    """
    def __init__(self, token):
        self._token = token

    def auth_flow(self, request):
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request


def label_selector(labels):
    """
    Returns a label selector string that matches all of the given labels.
    """
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def server_public_ip(server):
    """
    Returns the public IPv4 address of the given server, if it has one.
    """
    ipv4 = (server.get("public_net") or {}).get("ipv4") or {}
    return ipv4.get("ip")


def server_private_ip(server):
    """
    Returns the first private network address of the given server, if it has one.
    """
    private_net = server.get("private_net") or []
    return private_net[0].get("ip") if private_net else None


class Resource(rest.Resource):
    """
    Base resource for the Hetzner Cloud API, e.g. servers or networks.
    """
    def __init__(self, client, name, prefix = None, singular_name = None):
        super().__init__(client, name, prefix)
        # If no singular name is given, assume the name ends in 's'
        self._singular_name = singular_name or self._name[:-1]

    def _prepare_path(self, id = None, params = None):
        # Ids are integers in the Hetzner Cloud API
        return super()._prepare_path(str(id) if id is not None else None, params)

    def _extract_list(self, response):
        return response.json()[self._name]

    def _extract_next_page(self, response):
        pagination = response.json().get("meta", {}).get("pagination", {})
        next_page = pagination.get("next_page")
        if not next_page:
            return None
        # Carry the filters of the current request over to the next page
        params = dict(response.request.url.params)
        params["page"] = next_page
        path, _ = self._prepare_path()
        return path, params

    def _extract_one(self, response):
        content_type = response.headers.get("content-type")
        if content_type == "application/json":
            return response.json()[self._singular_name]
        else:
            return super()._extract_one(response)

    def list(self, **params):
        params.setdefault("per_page", settings.hcloud.page_size)
        return super().list(**params)


class Client(rest.AsyncClient):
    """
    Client for the Hetzner Cloud API.
    """
    def __init__(self, token, /, base_url = None, **kwargs):
        kwargs.setdefault("timeout", settings.hcloud.request_timeout)
        super().__init__(
            base_url = base_url or str(settings.hcloud.endpoint),
            auth = Auth(token),
            **kwargs
        )

    @flow
    def raise_for_status(self, response):
        # Convert response errors into CloudErrors with the code from the API
        try:
            yield super().raise_for_status(response)
        except httpx.HTTPStatusError as source:
            raise CloudError(source)

    async def request(self, method, url, **kwargs):
        """
        Makes a request to the API, retrying transient transport errors.
        """
        return await retry_transient(
            super().request,
            method,
            url,
            retries = settings.hcloud.retries,
            initial_delay = settings.hcloud.retry_initial_delay,
            max_delay = settings.hcloud.retry_max_delay,
            multiplier = settings.hcloud.retry_multiplier,
            **kwargs
        )

    def resource(self, name, prefix = None):
        return Resource(self, name, prefix)

    @property
    def servers(self):
        return self.resource("servers")

    @property
    def images(self):
        return self.resource("images")

    @property
    def ssh_keys(self):
        return self.resource("ssh_keys")

    @property
    def networks(self):
        return self.resource("networks")

    @property
    def firewalls(self):
        return self.resource("firewalls")

    @property
    def placement_groups(self):
        return self.resource("placement_groups")

    @property
    def load_balancers(self):
        return self.resource("load_balancers")

    async def get_server(self, name):
        """
        Returns the server with the given name, or None if there is no such server.
        """
        return await self.servers.first(name = name)

    async def list_servers(self, labels):
        """
        Returns the servers that have all of the given labels.
        """
        return [
            server
            async for server in self.servers.list(label_selector = label_selector(labels))
        ]

    async def create_server(
        self,
        name,
        server_type,
        image,
        location,
        *,
        labels,
        ssh_keys = None,
        networks = None,
        placement_group = None,
        user_data = None
    ):
        """
        Creates a server and returns it.
        """
        data = {
            "name": name,
            "server_type": server_type,
            "image": image,
            "location": location,
            "labels": labels,
            "ssh_keys": list(ssh_keys or []),
            "networks": list(networks or []),
            "start_after_create": True,
            "public_net": { "enable_ipv4": True, "enable_ipv6": True },
        }
        if placement_group:
            data["placement_group"] = placement_group
        if user_data:
            data["user_data"] = user_data
        logger.info("creating server %s", name)
        return await self.servers.create(data)

    async def ensure_server(self, name, server_type, image, location, **kwargs):
        """
        Returns the server with the given name, creating it if it does not exist.
        """
        server = await self.get_server(name)
        if server:
            return server
        return await self.create_server(name, server_type, image, location, **kwargs)

    async def delete_server(self, id):
        """
        Deletes the server with the given id. A server that is already gone is not
        an error.
        """
        logger.info("deleting server %s", id)
        await self.servers.delete(id)

    async def find_snapshot(self, labels):
        """
        Returns the most recent snapshot with the given labels, or None.
        """
        return await self.images.first(
            type = "snapshot",
            label_selector = label_selector(labels),
            sort = "created:desc"
        )

    async def ensure_ssh_key(self, name, public_key, labels):
        """
        Returns the SSH key with the given name, creating it if it does not exist.
        """
        ssh_key = await self.ssh_keys.first(name = name)
        if ssh_key:
            return ssh_key
        logger.info("creating SSH key %s", name)
        return await self.ssh_keys.create(
            { "name": name, "public_key": public_key, "labels": labels }
        )

    async def ensure_network(self, name, ip_range, subnet_range, labels):
        """
        Returns the network with the given name, creating it with a single cloud
        subnet if it does not exist.
        """
        network = await self.networks.first(name = name)
        if network:
            return network
        logger.info("creating network %s", name)
        return await self.networks.create(
            {
                "name": name,
                "ip_range": ip_range,
                "labels": labels,
                "subnets": [
                    {
                        "type": "cloud",
                        "ip_range": subnet_range,
                        "network_zone": settings.hcloud.network_zone,
                    },
                ],
            }
        )

    async def ensure_firewall(self, name, rules, labels, apply_to_labels):
        """
        Returns the firewall with the given name, creating it if it does not exist.

        The firewall is applied to all servers matching the given labels.
        """
        firewall = await self.firewalls.first(name = name)
        if firewall:
            return firewall
        logger.info("creating firewall %s", name)
        return await self.firewalls.create(
            {
                "name": name,
                "labels": labels,
                "rules": rules,
                "apply_to": [
                    {
                        "type": "label_selector",
                        "label_selector": { "selector": label_selector(apply_to_labels) },
                    },
                ],
            }
        )

    async def ensure_placement_group(self, name, labels):
        """
        Returns the spread placement group with the given name, creating it if it does
        not exist.
        """
        placement_group = await self.placement_groups.first(name = name)
        if placement_group:
            return placement_group
        logger.info("creating placement group %s", name)
        return await self.placement_groups.create(
            { "name": name, "type": "spread", "labels": labels }
        )

    async def ensure_load_balancer(self, name, location, network_id, labels, target_labels):
        """
        Returns the load balancer with the given name, creating it if it does not exist.

        The load balancer forwards the Kubernetes API port to the private IPs of the
        servers matching the target labels.
        """
        load_balancer = await self.load_balancers.first(name = name)
        if load_balancer:
            return load_balancer
        logger.info("creating load balancer %s", name)
        return await self.load_balancers.create(
            {
                "name": name,
                "load_balancer_type": settings.hcloud.load_balancer_type,
                "location": location,
                "network": network_id,
                "labels": labels,
                "services": [
                    {
                        "protocol": "tcp",
                        "listen_port": 6443,
                        "destination_port": 6443,
                        "health_check": {
                            "protocol": "tcp",
                            "port": 6443,
                            "interval": 15,
                            "timeout": 10,
                            "retries": 3,
                        },
                    },
                ],
                "targets": [
                    {
                        "type": "label_selector",
                        "label_selector": { "selector": label_selector(target_labels) },
                        "use_private_ip": True,
                    },
                ],
            }
        )

    async def delete_resources(self, labels):
        """
        Deletes all the resources with the given labels and returns the number of
        resources that were still present.

        Servers are deleted first, as the other resources cannot be deleted while
        they are in use.
        """
        selector = label_selector(labels)
        remaining = 0
        for resource in [
            self.servers,
            self.load_balancers,
            self.firewalls,
            self.placement_groups,
            self.networks,
            self.ssh_keys,
        ]:
            async for item in resource.list(label_selector = selector):
                remaining += 1
                logger.info("deleting %s %s", resource._singular_name, item["name"])
                await resource.delete(item["id"])
        return remaining
