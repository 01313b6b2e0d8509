"""Shared pytest fixtures for sessionhost tests.

This module provides common fixtures used across test files:
- sessionhost_root: Sets SESSIONHOST_ROOT environment variable
- pulumi_mocks: Standard Pulumi mock class for resource tests
- scenario_graph: The single private subnet graph used across resolver, validator and reconciler tests
- fake_provider: A thread-safe in-memory Provider recording creation calls
"""

import pathlib
import threading
import typing

import pulumi
import pytest

import sessionhost
import sessionhost.graph
import sessionhost.reconcile
from sessionhost.errors import ProviderRejected

# ============================================================================
# Environment Setup Fixtures
# ============================================================================


@pytest.fixture
def sessionhost_root(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Set SESSIONHOST_ROOT environment variable to a temporary directory.

    Usage:
        def test_something(sessionhost_root):
            (sessionhost_root / "mine.yaml").write_text(...)
            decl = sessionhost.declaration.load_variant("mine")
    """
    monkeypatch.setenv("SESSIONHOST_ROOT", str(tmp_path))
    return tmp_path


# ============================================================================
# Pulumi Mock Fixtures
# ============================================================================


class StandardPulumiMocks(pulumi.runtime.Mocks):
    """Standard Pulumi mocks for testing Pulumi resources.

    Returns resource names as IDs and echoes back all inputs as outputs, plus the handful of
    provider-computed attributes the session host component reads.
    """

    def new_resource(self, args: pulumi.runtime.MockResourceArgs) -> tuple[str | None, dict[typing.Any, typing.Any]]:
        outputs = dict(args.inputs)
        if args.typ == "aws:ec2/instance:Instance":
            outputs["privateIp"] = "10.0.1.10"
        elif args.typ == "aws:iam/role:Role":
            outputs["arn"] = f"arn:aws:iam::123456789012:role/{args.name}"
        elif args.typ == "aws:s3/bucket:Bucket":
            outputs["arn"] = f"arn:aws:s3:::{outputs.get('bucket', args.name)}"
        elif args.typ == "random:index/randomId:RandomId":
            outputs["hex"] = "1a2b3c4d"
        return f"{args.name}-id", outputs

    def call(
        self, args: pulumi.runtime.MockCallArgs
    ) -> dict[typing.Any, typing.Any] | tuple[dict[typing.Any, typing.Any], list[tuple[str, str]] | None]:
        if args.token == "aws:ec2/getVpcEndpointService:getVpcEndpointService":
            service = args.args.get("service")
            return {
                "serviceName": f"com.amazonaws.us-east-1.{service}",
                "serviceType": args.args.get("serviceType", "Interface"),
            }
        if args.token == "aws:ec2/getAmi:getAmi":
            return {"id": "ami-0123456789abcdef0"}
        if args.token == "aws:index/getRegion:getRegion":
            return {"name": "us-east-1"}
        return {}


@pytest.fixture
def pulumi_mocks() -> type[pulumi.runtime.Mocks]:
    """Returns the standard Pulumi mocks class.

    Usage:
        @pulumi.runtime.test
        def test_my_resource(pulumi_mocks):
            pulumi.runtime.set_mocks(pulumi_mocks(), preview=False)
    """
    return StandardPulumiMocks


# ============================================================================
# Graph Fixtures
# ============================================================================


@pytest.fixture
def scenario_graph() -> sessionhost.graph.EntityGraph:
    """One private subnet, one identity, an ssm interface endpoint admitting 443 from the subnet and
    an instance that depends on the endpoint."""
    return sessionhost.graph.EntityGraph(
        [
            sessionhost.NetworkBlock(
                name="net",
                cidr_block="10.0.0.0/16",
                subnets=[sessionhost.Subnet(name="private-a", cidr_block="10.0.1.0/24")],
            ),
            sessionhost.Identity(name="host-role", trusted_services=["compute-service"]),
            sessionhost.FirewallGroup(
                name="endpoint-sg",
                network="net",
                ingress=[sessionhost.FirewallRule(peer="10.0.1.0/24", protocol="tcp", from_port=443, to_port=443)],
            ),
            sessionhost.Endpoint(
                name="ssm",
                service="ssm",
                network="net",
                subnets=["private-a"],
                firewall_groups=["endpoint-sg"],
            ),
            sessionhost.ComputeInstance(
                name="host",
                subnet="private-a",
                identity="host-role",
                depends_on=["ssm"],
            ),
        ]
    )


class FakeProvider:
    """Records every create call and answers with predictable outputs.

    :param reject: entity names the provider refuses with ProviderRejected
    :param on_create: called with the entity name before it is created, eg: to cancel mid-apply
    """

    def __init__(
        self,
        reject: typing.Iterable[str] = (),
        on_create: typing.Callable[[str], None] | None = None,
    ):
        self.reject = set(reject)
        self.on_create = on_create
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def create(
        self,
        entity: sessionhost.Entity,
        state: sessionhost.reconcile.CreatedState,
    ) -> dict[str, str]:
        with self._lock:
            self.calls.append(entity.name)
        if self.on_create is not None:
            self.on_create(entity.name)
        if entity.name in self.reject:
            raise ProviderRejected(entity.name, "UnauthorizedOperation", "You are not authorized")

        outputs = {"id": f"{entity.kind}-{entity.name}", "arn": f"arn:test:{entity.name}", "name": entity.name}
        match entity:
            case sessionhost.NetworkBlock():
                outputs |= {f"subnet:{s.name}": f"subnet-{s.name}" for s in entity.subnets}
                outputs |= {f"route_table:{rt}": f"rtb-{rt}" for rt in entity.route_tables}
            case sessionhost.ComputeInstance():
                # every dependency must already be Ready
                for ref in entity.references():
                    if ref.field != "subnet":
                        state.get(ref.target, "id")
                outputs["private_ip"] = "10.0.1.10"
        return outputs


@pytest.fixture
def fake_provider() -> type[FakeProvider]:
    return FakeProvider
