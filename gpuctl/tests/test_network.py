import pytest

from conftest import MESH_ADDRESS, PRIMARY_ADDRESS, FakeFirewall, FakeHost, FakeMesh, make_config
from gpuctl.modules.cluster.errors import NetworkError
from gpuctl.modules.cluster.host.firewall import ufw_arguments
from gpuctl.modules.cluster.installer.network import (
    NetworkTopologyConfigurator, plan_firewall_rules, service_ports,
)
from gpuctl.modules.cluster.models import MESH_CIDR, NetworkRule, NodeRole, RuleAction


def _configurator(config, polling, mesh=None, firewall=None, host=None):
    return NetworkTopologyConfigurator(
        config, mesh or FakeMesh(), firewall or FakeFirewall(), host or FakeHost(), polling
    )


def test_without_mesh_only_ssh_is_planned(install_path):
    rules = plan_firewall_rules(make_config(install_path), mesh_active=False)
    assert rules == [NetworkRule('any', 22, proto='tcp', comment="SSH")]


@pytest.mark.parametrize("role", [NodeRole.COORDINATOR, NodeRole.WORKER])
def test_every_allow_precedes_the_deny_for_its_port(install_path, role):
    config = make_config(install_path, role=role)
    rules = plan_firewall_rules(config, mesh_active=True)

    assert rules[0].port == 22 and rules[0].source == 'any'
    for index, rule in enumerate(rules):
        if rule.action != RuleAction.DENY:
            continue
        allows = [i for i, r in enumerate(rules) if r.action == RuleAction.ALLOW and r.port == rule.port]
        assert allows and max(allows) < index


@pytest.mark.parametrize("role", [NodeRole.COORDINATOR, NodeRole.WORKER])
def test_no_rule_allows_everything(install_path, role):
    rules = plan_firewall_rules(make_config(install_path, role=role), mesh_active=True)
    assert not any(rule.is_allow_all for rule in rules)


def test_coordinator_service_ports_are_mesh_scoped(install_path):
    config = make_config(install_path)
    rules = plan_firewall_rules(config, mesh_active=True)
    mesh_ports = {r.port for r in rules if r.source == MESH_CIDR}
    denied_ports = {r.port for r in rules if r.action == RuleAction.DENY}
    assert mesh_ports == denied_ports == {p for p, _, _, _ in service_ports(config)}
    assert config.ports.etcd in mesh_ports
    assert 22 not in denied_ports


def test_worker_opens_container_port_range(install_path):
    rules = plan_firewall_rules(make_config(install_path, role=NodeRole.WORKER), mesh_active=True)
    ranged = [r for r in rules if r.port_end is not None]
    assert {r.port_spec for r in ranged} == {"30000:31000"}
    assert all(r.proto == 'tcp' for r in ranged)


def test_ufw_arguments():
    rule = NetworkRule(MESH_CIDR, 8120, comment="etcd")
    assert ufw_arguments(rule) == [
        'allow', 'from', MESH_CIDR, 'to', 'any', 'port', '8120', 'comment', 'etcd'
    ]
    deny = NetworkRule('any', 30000, RuleAction.DENY, 31000, 'tcp')
    assert ufw_arguments(deny) == ['deny', 'from', 'any', 'to', 'any', 'port', '30000:31000', 'proto', 'tcp']


def test_identity_without_mesh_uses_primary_address(install_path, polling):
    config = make_config(install_path, identity=False)
    firewall = FakeFirewall()
    identity = _configurator(config, polling, firewall=firewall).configure()

    assert identity.primary_address == PRIMARY_ADDRESS
    assert identity.mesh_address is None
    assert identity.effective_address == PRIMARY_ADDRESS
    assert [r.port for r in firewall.rules] == [22]
    assert not firewall.enabled


def test_route_address_is_used_when_no_interface_reports_one(install_path, polling):
    host = FakeHost()
    host.addresses = []
    host.route = "10.1.2.3"
    identity = _configurator(make_config(install_path, identity=False), polling, host=host).establish_identity()
    assert identity.primary_address == "10.1.2.3"


def test_primary_address_skips_mesh_interface(install_path, polling):
    config = make_config(install_path, role=NodeRole.WORKER, identity=False, mesh_auth_key="tskey-abc")
    host = FakeHost()
    host.addresses = [MESH_ADDRESS, PRIMARY_ADDRESS]
    identity = _configurator(config, polling, host=host).establish_identity()
    assert identity.primary_address == PRIMARY_ADDRESS
    assert identity.mesh_address == MESH_ADDRESS


def test_no_address_at_all_is_fatal(install_path, polling):
    host = FakeHost()
    host.addresses = []
    with pytest.raises(NetworkError):
        _configurator(make_config(install_path, identity=False), polling, host=host).establish_identity()


def test_mesh_address_is_awaited_and_advertised(install_path, polling):
    config = make_config(install_path, role=NodeRole.WORKER, identity=False, mesh_auth_key="tskey-abc")
    mesh = FakeMesh(polls_until_assigned=2)
    firewall = FakeFirewall()

    identity = _configurator(config, polling, mesh=mesh, firewall=firewall).configure()

    assert mesh.installed
    assert mesh.joined_with == "tskey-abc"
    assert mesh.polls == 3
    assert identity.mesh_address == MESH_ADDRESS
    assert identity.effective_address == MESH_ADDRESS
    assert identity.primary_address == PRIMARY_ADDRESS
    assert firewall.enabled
    assert firewall.rules == plan_firewall_rules(config, mesh_active=True)


def test_mesh_that_never_assigns_an_address_is_fatal(install_path, polling):
    config = make_config(install_path, identity=False, mesh_auth_key="tskey-abc")
    mesh = FakeMesh(polls_until_assigned=100)
    with pytest.raises(NetworkError):
        _configurator(config, polling, mesh=mesh).establish_identity()
    assert mesh.polls == polling.mesh_attempts


def test_connected_mesh_is_not_rejoined(install_path, polling):
    config = make_config(install_path, identity=False, mesh_auth_key="tskey-abc")
    mesh = FakeMesh()
    mesh.installed = mesh.connected = True
    identity = _configurator(config, polling, mesh=mesh).establish_identity()
    assert mesh.joined_with is None
    assert identity.mesh_address == MESH_ADDRESS


def test_missing_firewall_is_skipped(install_path, polling):
    config = make_config(install_path, identity=False, mesh_auth_key="tskey-abc")
    firewall = FakeFirewall(available=False)
    _configurator(config, polling, firewall=firewall).configure()
    assert firewall.rules == []
    assert not firewall.enabled
