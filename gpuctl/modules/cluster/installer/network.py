"""Node addressing and firewall scoping.

When a mesh auth key is supplied the node joins the Tailscale overlay and its
mesh address becomes the address every other service advertises. The firewall
is then scoped so that service ports answer only to the mesh:

1. SSH is allowed from anywhere, mesh or not.
2. Each service port is allowed from the mesh CIDR.
3. Each service port is denied from any source.

UFW evaluates rules in insertion order, so every allow for a port lands before
the deny for that port.
"""

import ipaddress
import logging
from typing import List, Optional, Tuple

from ..config import PollingConfig
from ..errors import NetworkError
from ..host.interfaces import FirewallManager, HostInspector, MeshAgent
from ..models import (
    CONTAINER_BRIDGE_CIDR, MESH_CIDR, Configuration, NetworkRule, NodeIdentity, RuleAction,
)
from .utils import poll

logger = logging.getLogger("gpuctl.installer.network")

SSH_PORT = 22
CONTAINER_PORT_RANGE = (30000, 31000)

# (port, port_end, proto, label)
ServicePort = Tuple[int, Optional[int], Optional[str], str]


def service_ports(config: Configuration) -> List[ServicePort]:
    """Ports a node of the configured role serves to the rest of the cluster."""
    ports = config.ports
    if config.is_coordinator:
        return [
            (ports.etcd, None, None, "etcd"),
            (ports.redis, None, None, "Redis"),
            (ports.manager, None, None, "Manager"),
            (ports.webserver, None, None, "Webserver"),
            (ports.storage_proxy_client, None, None, "Storage-Proxy Client"),
            (ports.storage_proxy_manager, None, None, "Storage-Proxy Manager"),
            (ports.appproxy_coordinator, None, None, "App-Proxy Coordinator"),
            (ports.appproxy_worker, None, None, "App-Proxy Worker"),
            (ports.object_storage, None, None, "Object Storage"),
        ]
    return [
        (ports.agent_rpc, None, None, "Agent RPC"),
        (ports.agent_watcher, None, None, "Agent Watcher"),
        (ports.agent_service, None, None, "Agent Service"),
        (CONTAINER_PORT_RANGE[0], CONTAINER_PORT_RANGE[1], 'tcp', "Containers"),
    ]


def plan_firewall_rules(config: Configuration, mesh_active: bool) -> List[NetworkRule]:
    """Ordered firewall rules for this node.

    Without an active mesh only the SSH rule is produced.
    """
    rules = [NetworkRule('any', SSH_PORT, proto='tcp', comment="SSH")]
    if not mesh_active:
        return rules

    ports = service_ports(config)
    for port, port_end, proto, label in ports:
        rules.append(NetworkRule(
            MESH_CIDR, port, RuleAction.ALLOW, port_end, proto, f"Backend.AI {label}"
        ))
    if config.is_coordinator:
        rules.append(NetworkRule(
            CONTAINER_BRIDGE_CIDR, config.ports.manager, RuleAction.ALLOW,
            comment="Backend.AI Manager from Docker"
        ))
    for port, port_end, proto, label in ports:
        rules.append(NetworkRule(
            'any', port, RuleAction.DENY, port_end, proto, f"Block {label} outside mesh"
        ))
    return rules


def in_mesh(address: str) -> bool:
    try:
        return ipaddress.ip_address(address) in ipaddress.ip_network(MESH_CIDR)
    except ValueError:
        return False


class NetworkTopologyConfigurator:
    """Resolves this node's addresses and applies the firewall plan."""

    def __init__(
        self,
        config: Configuration,
        mesh: MeshAgent,
        firewall: FirewallManager,
        host: HostInspector,
        polling: Optional[PollingConfig] = None,
    ):
        self.config = config
        self.mesh = mesh
        self.firewall = firewall
        self.host = host
        self.polling = polling or PollingConfig()

    def configure(self) -> NodeIdentity:
        """Establish the node identity, then scope the firewall to it."""
        identity = self.establish_identity()
        rules = plan_firewall_rules(self.config, self.config.mesh_enabled)
        self.apply_firewall(rules)
        return identity

    def establish_identity(self) -> NodeIdentity:
        """Determine the primary and (optional) mesh address of this node.

        Raises:
            NetworkError: If the mesh never assigns an address or no address is found
        """
        mesh_address = self.join_mesh() if self.config.mesh_enabled else None
        primary = self.primary_address()

        if primary is None and mesh_address is None:
            raise NetworkError("Could not determine a local IP address")

        identity = NodeIdentity(primary_address=primary or mesh_address, mesh_address=mesh_address)
        if mesh_address:
            logger.info(f"🌐 Using mesh address for services: {mesh_address}")
        else:
            logger.info(f"🌐 Local IP address: {identity.primary_address}")
        return identity

    def join_mesh(self) -> Optional[str]:
        """Join the overlay mesh and wait for an assigned IPv4 address."""
        if not self.mesh.is_installed():
            self.mesh.install()
        elif self.mesh.is_connected():
            address = self.mesh.address()
            if address:
                logger.info(f"✅ Tailscale already connected: {address}")
                return address

        logger.info("🔗 Connecting to Tailscale network")
        self.mesh.join(self.config.mesh_auth_key)

        if self.config.dry_run:
            address = self.mesh.address()
            if address is None:
                logger.info("[DRY RUN] Mesh address unknown until the node actually joins")
            return address

        address = poll(
            self.mesh.address,
            attempts=self.polling.mesh_attempts,
            interval=self.polling.mesh_interval,
            description="Tailscale address",
        )
        logger.info(f"✅ Tailscale connected: {address}")
        return address

    def primary_address(self) -> Optional[str]:
        """First non-loopback interface address outside the mesh, else the default route's source."""
        for address in self.host.interface_addresses():
            if not in_mesh(address):
                return address
        route = self.host.route_address()
        if route and not in_mesh(route):
            return route
        return None

    def apply_firewall(self, rules: List[NetworkRule]) -> None:
        if not self.firewall.is_available():
            logger.info("UFW not installed, skipping firewall configuration")
            return

        if self.config.mesh_enabled:
            logger.info(f"🔒 Configuring firewall rules for the mesh network ({MESH_CIDR})")
        for rule in rules:
            self.firewall.apply(rule)
        if self.config.mesh_enabled:
            self.firewall.enable()
