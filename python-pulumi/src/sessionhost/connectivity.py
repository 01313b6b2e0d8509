from __future__ import annotations

import typing
import warnings

import sessionhost
from sessionhost.errors import UnreachableEndpoint

if typing.TYPE_CHECKING:
    import sessionhost.graph


def dependent_instances(
    graph: sessionhost.graph.EntityGraph,
    endpoint: sessionhost.Endpoint,
) -> list[sessionhost.ComputeInstance]:
    """
    Instances that need the endpoint: those ordered after it explicitly, or failing that, every
    instance placed in the endpoint's network block.
    """
    instances = graph.of_kind(sessionhost.ComputeInstance)
    explicit = [i for i in instances if endpoint.name in i.depends_on]
    if explicit:
        return explicit

    return [i for i in instances if graph.has_subnet(i.subnet) and graph.subnet(i.subnet)[0].name == endpoint.network]


def peer_covers(
    rule: sessionhost.FirewallRule,
    graph: sessionhost.graph.EntityGraph,
    instance: sessionhost.ComputeInstance,
) -> bool:
    peer = rule.peer_network
    if peer is None:
        return rule.peer in instance.firewall_groups

    _, subnet = graph.subnet(instance.subnet)
    return subnet.network.version == peer.version and subnet.network.subnet_of(peer)  # type: ignore[arg-type]


def egress_unrestricted(group: sessionhost.FirewallGroup) -> bool:
    # no declared egress keeps the provider's default allow-all rule
    if len(group.egress) == 0:
        return True
    return any(
        rule.protocol == sessionhost.ALL_PROTOCOLS and rule.peer == sessionhost.ANY_IPV4 for rule in group.egress
    )


def _firewall_groups(
    graph: sessionhost.graph.EntityGraph,
    names: typing.Iterable[str],
) -> list[sessionhost.FirewallGroup]:
    return [graph[n] for n in names if n in graph and isinstance(graph[n], sessionhost.FirewallGroup)]  # type: ignore[misc]


def _check_interface(
    graph: sessionhost.graph.EntityGraph,
    endpoint: sessionhost.Endpoint,
    network: sessionhost.NetworkBlock,
) -> list[UnreachableEndpoint]:
    findings: list[UnreachableEndpoint] = []
    groups = _firewall_groups(graph, endpoint.firewall_groups)

    for subnet_name in endpoint.subnets:
        if network.subnet(subnet_name) is None:
            findings.append(
                UnreachableEndpoint(endpoint.name, f"subnet {subnet_name!r} is not part of network {network.name!r}")
            )

    for group in groups:
        for rule in group.ingress:
            peer = rule.peer_network
            if peer is not None and not peer.overlaps(network.network):  # type: ignore[arg-type]
                findings.append(
                    UnreachableEndpoint(
                        endpoint.name,
                        f"firewall group {group.name!r} admits {rule.peer}, which is outside network block "
                        f"{network.cidr_block}",
                    )
                )

    if not any(rule.allows("tcp", sessionhost.HTTPS_PORT) for g in groups for rule in g.ingress):
        findings.append(
            UnreachableEndpoint(endpoint.name, f"no ingress rule admits tcp/{sessionhost.HTTPS_PORT}")
        )
        return findings

    for instance in dependent_instances(graph, endpoint):
        if not graph.has_subnet(instance.subnet):
            continue
        admitted = any(
            rule.allows("tcp", sessionhost.HTTPS_PORT) and peer_covers(rule, graph, instance)
            for g in groups
            for rule in g.ingress
        )
        if not admitted:
            findings.append(
                UnreachableEndpoint(
                    endpoint.name,
                    f"no ingress rule admits tcp/{sessionhost.HTTPS_PORT} from instance {instance.name!r} "
                    f"in subnet {instance.subnet!r}",
                )
            )

    if groups and not any(egress_unrestricted(g) for g in groups):
        findings.append(UnreachableEndpoint(endpoint.name, "egress to the upstream service is restricted"))

    return findings


def _check_gateway(
    graph: sessionhost.graph.EntityGraph,
    endpoint: sessionhost.Endpoint,
    network: sessionhost.NetworkBlock,
) -> list[UnreachableEndpoint]:
    findings: list[UnreachableEndpoint] = []
    for instance in dependent_instances(graph, endpoint):
        if not graph.has_subnet(instance.subnet):
            continue
        owner, subnet = graph.subnet(instance.subnet)
        if owner.name != network.name:
            continue
        route_table = network.route_table_name(subnet)
        if route_table not in endpoint.route_tables:
            findings.append(
                UnreachableEndpoint(
                    endpoint.name,
                    f"route table {route_table!r} of instance {instance.name!r} is not associated",
                )
            )
    return findings


def check_endpoint(graph: sessionhost.graph.EntityGraph, endpoint: sessionhost.Endpoint) -> list[UnreachableEndpoint]:
    network = graph[endpoint.network] if endpoint.network in graph else None
    if not isinstance(network, sessionhost.NetworkBlock):
        # reported as an unresolved reference by the graph
        return []

    if endpoint.endpoint_type == sessionhost.EndpointType.GATEWAY:
        return _check_gateway(graph, endpoint, network)

    return _check_interface(graph, endpoint, network)


def check_connectivity(graph: sessionhost.graph.EntityGraph) -> list[UnreachableEndpoint]:
    """
    Flag endpoints that the provider would happily create but that no dependent instance can use.
    This is a logical check; none of these are rejected at creation time.
    """
    findings: list[UnreachableEndpoint] = []
    endpoint_groups: set[str] = set()
    for endpoint in graph.of_kind(sessionhost.Endpoint):
        findings.extend(check_endpoint(graph, endpoint))
        endpoint_groups.update(endpoint.firewall_groups)

    for group in graph.of_kind(sessionhost.FirewallGroup):
        if group.name in endpoint_groups or group.network not in graph:
            continue
        network = graph[group.network]
        if not isinstance(network, sessionhost.NetworkBlock):
            continue
        for rule in group.ingress:
            peer = rule.peer_network
            if peer is not None and not peer.overlaps(network.network):  # type: ignore[arg-type]
                warnings.warn(
                    f"firewall group {group.name!r} admits {rule.peer} from outside network block {network.cidr_block}",
                    stacklevel=2,
                )

    return findings
