import pytest

import sessionhost
import sessionhost.graph
import sessionhost.validate
from sessionhost.errors import CyclicDependency, UnreachableEndpoint, UnresolvedReference, ValidationFailed


def test_scenario_graph_is_valid(scenario_graph: sessionhost.graph.EntityGraph):
    assert sessionhost.validate.check_graph(scenario_graph) == []
    sessionhost.validate.ensure_valid(scenario_graph)


def test_findings_are_collected_across_checks():
    graph = sessionhost.graph.EntityGraph(
        [
            sessionhost.NetworkBlock(
                name="net",
                cidr_block="10.0.0.0/16",
                subnets=[sessionhost.Subnet(name="private-a", cidr_block="10.0.1.0/24")],
            ),
            sessionhost.FirewallGroup(name="endpoint-sg", network="net"),
            sessionhost.Endpoint(
                name="ssm", service="ssm", network="net", subnets=["private-a"], firewall_groups=["endpoint-sg"]
            ),
            sessionhost.Identity(
                name="role",
                statements=[sessionhost.Statement(actions=["s3:GetObject"], resources=["missing-store/*"])],
            ),
            sessionhost.ComputeInstance(name="host", subnet="private-a", identity="role", depends_on=("ssm",)),
        ]
    )

    errors = sessionhost.validate.check_graph(graph)

    assert [type(e) for e in errors] == [UnresolvedReference, UnreachableEndpoint]
    # reported once even though both the graph and the permission check see it
    assert errors[0].target == "missing-store"


def test_cycle_is_reported_as_a_finding():
    graph = sessionhost.graph.EntityGraph(
        [
            sessionhost.ObjectStore(name="a", depends_on=("b",)),
            sessionhost.ObjectStore(name="b", depends_on=("a",)),
        ]
    )

    errors = sessionhost.validate.check_graph(graph)

    assert len(errors) == 1
    assert isinstance(errors[0], CyclicDependency)


def test_compute_in_a_public_subnet_is_rejected():
    graph = sessionhost.graph.EntityGraph(
        [
            sessionhost.NetworkBlock(
                name="net",
                cidr_block="10.0.0.0/16",
                subnets=[sessionhost.Subnet(name="edge", cidr_block="10.0.101.0/24", privacy="public")],
            ),
            sessionhost.ComputeInstance(name="host", subnet="edge"),
        ]
    )

    errors = sessionhost.validate.check_placement(graph)

    assert len(errors) == 1
    assert "is public" in str(errors[0])


def test_identity_must_be_an_identity():
    graph = sessionhost.graph.EntityGraph(
        [
            sessionhost.NetworkBlock(
                name="net",
                cidr_block="10.0.0.0/16",
                subnets=[sessionhost.Subnet(name="private-a", cidr_block="10.0.1.0/24")],
            ),
            sessionhost.ObjectStore(name="data"),
            sessionhost.ComputeInstance(name="host", subnet="private-a", identity="data"),
        ]
    )

    errors = sessionhost.validate.check_placement(graph)

    assert [str(e) for e in errors] == ["host.identity references 'data', which is not an identity"]


def test_ensure_valid_raises_with_every_finding():
    graph = sessionhost.graph.EntityGraph([sessionhost.ComputeInstance(name="host", subnet="nowhere", identity="ghost")])

    with pytest.raises(ValidationFailed) as exc_info:
        sessionhost.validate.ensure_valid(graph)

    assert len(exc_info.value.errors) == 2
    assert "declaration failed validation" in str(exc_info.value)
