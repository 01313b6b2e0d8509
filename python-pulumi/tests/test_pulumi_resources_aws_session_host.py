import json
import typing

import pulumi
import pytest

import sessionhost.aws_iam
import sessionhost.declaration
import sessionhost.pulumi_resources.aws_session_host
from sessionhost.errors import ValidationFailed


class RecordingMocks(pulumi.runtime.Mocks):
    """Delegates to the standard mocks and keeps the type and outputs of every registered resource."""

    def __init__(self, base: pulumi.runtime.Mocks):
        self.base = base
        self.resources: dict[str, tuple[str, dict[str, typing.Any]]] = {}

    def new_resource(self, args: pulumi.runtime.MockResourceArgs) -> tuple[str | None, dict[typing.Any, typing.Any]]:
        resource_id, outputs = self.base.new_resource(args)
        self.resources[args.name] = (args.typ, outputs)
        return resource_id, outputs

    def call(self, args: pulumi.runtime.MockCallArgs):  # type: ignore
        return self.base.call(args)


@pytest.fixture
def mocks(pulumi_mocks, monkeypatch: pytest.MonkeyPatch) -> RecordingMocks:
    monkeypatch.delenv("SESSIONHOST_ROOT", raising=False)
    recording = RecordingMocks(pulumi_mocks())
    pulumi.runtime.set_mocks(recording, preview=False)
    return recording


def test_full_variant_outputs_and_resources(mocks: RecordingMocks):
    decl = sessionhost.declaration.load_variant("full")

    @pulumi.runtime.test
    def build():
        host = sessionhost.pulumi_resources.aws_session_host.AWSSessionHost(decl)
        policy = pulumi.Output.json_dumps(sessionhost.aws_iam.build_policy_document(decl.graph["host-role"], host._get))

        def check(args):
            instance_id, ip, endpoint_id, bucket, document = args
            assert instance_id == "full-host-id"
            assert ip == "10.0.1.10"
            assert endpoint_id == "full-ssm-id"
            assert bucket == "sessionhost-data-1a2b3c4d"
            assert json.loads(document)["Statement"][0]["Resource"] == [
                "arn:aws:s3:::sessionhost-data-1a2b3c4d",
                "arn:aws:s3:::sessionhost-data-1a2b3c4d/*",
            ]

        return pulumi.Output.all(
            host.entity_outputs["host"]["id"],
            host.entity_outputs["host"]["private_ip"],
            host.entity_outputs["ssm"]["id"],
            host.entity_outputs["data"]["name"],
            policy,
        ).apply(check)

    build()

    types = {name: typ for name, (typ, _) in mocks.resources.items()}
    assert types["full-main"] == "aws:ec2/vpc:Vpc"
    assert types["full-ssm"] == "aws:ec2/vpcEndpoint:VpcEndpoint"
    assert types["full-data-versioning"] == "aws:s3/bucketVersioningV2:BucketVersioningV2"
    assert types["full-data-public-access-block"] == "aws:s3/bucketPublicAccessBlock:BucketPublicAccessBlock"
    assert types["full-host-role-profile"] == "aws:iam/instanceProfile:InstanceProfile"
    assert types["full-host-role-inline"] == "aws:iam/rolePolicy:RolePolicy"

    instance = mocks.resources["full-host"][1]
    assert instance["userDataReplaceOnChange"] is False
    assert instance["metadataOptions"]["httpTokens"] == "required"
    assert instance["iamInstanceProfile"] == "full-host-role-profile"
    assert instance["ami"] == "ami-0123456789abcdef0"

    gateway = mocks.resources["full-s3"][1]
    assert gateway["vpcEndpointType"] == "Gateway"
    assert gateway["routeTableIds"] == ["full-main-private-id"]

    endpoint_sg = mocks.resources["full-endpoint-sg"][1]
    assert endpoint_sg["ingress"][0]["securityGroups"] == ["full-host-sg-id"]


def test_minimal_variant_restores_default_egress(mocks: RecordingMocks):
    decl = sessionhost.declaration.load_variant("minimal")

    @pulumi.runtime.test
    def build():
        host = sessionhost.pulumi_resources.aws_session_host.AWSSessionHost(decl)
        assert "data" not in host.entity_outputs
        return host.entity_outputs["host"]["id"]

    build()

    endpoint_sg = mocks.resources["minimal-endpoint-sg"][1]
    assert len(endpoint_sg["egress"]) == 1
    assert endpoint_sg["egress"][0]["protocol"] == "-1"
    assert endpoint_sg["egress"][0]["cidrBlocks"] == ["0.0.0.0/0"]
    assert endpoint_sg["ingress"][0]["cidrBlocks"] == ["10.0.1.0/24"]
    assert "minimal-host-role-inline" not in mocks.resources
    assert "minimal-main-igw" not in mocks.resources


def test_invalid_declaration_is_refused(mocks: RecordingMocks):
    decl = sessionhost.declaration.parse_declaration(
        {
            "apiVersion": "sessionhost/v1",
            "kind": "SessionHostDeclaration",
            "metadata": {"name": "broken"},
            "spec": {"entities": [{"kind": "compute_instance", "name": "host", "subnet": "nowhere"}]},
        }
    )

    with pytest.raises(ValidationFailed):
        sessionhost.pulumi_resources.aws_session_host.AWSSessionHost(decl)
