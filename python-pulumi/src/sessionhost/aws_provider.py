from __future__ import annotations

import json
import typing

import boto3
import botocore.exceptions

import sessionhost
import sessionhost.aws_iam
import sessionhost.junkdrawer
from sessionhost.errors import ProviderRejected

if typing.TYPE_CHECKING:
    import sessionhost.reconcile

AL2023_NAME_PATTERN = "al2023-ami-2023.*-kernel-*-x86_64"
CREATE_BUCKET_DEFAULT_REGION = "us-east-1"


class AWSProvider:
    """
    Creates declared entities directly through the EC2, IAM and S3 APIs.

    Refusals from the control plane are surfaced as ProviderRejected carrying the service's own error
    code and message. Nothing is retried here beyond botocore's standard retry mode.
    """

    region: str
    tags: dict[str, str]

    def __init__(
        self,
        region: str,
        tags: dict[str, str] | None = None,
        session: boto3.Session | None = None,
    ):
        self.region = region
        self.tags = tags or {}
        session = session or boto3.Session(region_name=region)
        self.ec2 = session.client("ec2", region_name=region)
        self.iam = session.client("iam", region_name=region)
        self.s3 = session.client("s3", region_name=region)

    def create(self, entity: sessionhost.Entity, state: sessionhost.reconcile.CreatedState) -> dict[str, str]:
        handler = getattr(self, f"_create_{entity.kind}")
        try:
            return handler(entity, state)
        except botocore.exceptions.ClientError as exc:
            error = exc.response.get("Error", {})
            raise ProviderRejected(
                entity.name,
                error.get("Code", "Unknown"),
                error.get("Message", str(exc)),
            ) from exc
        except botocore.exceptions.BotoCoreError as exc:
            # credentials, connectivity and parameter validation failures never reach the service
            raise ProviderRejected(entity.name, type(exc).__name__, str(exc)) from exc

    def _tags(self, entity: sessionhost.Entity, name: str | None = None) -> list[dict[str, str]]:
        merged = (
            self.tags
            | entity.tags
            | {
                str(sessionhost.TagKeys.SESSIONHOST_ENTITY): entity.name,
                "Name": name or entity.name,
            }
        )
        return [{"Key": k, "Value": v} for k, v in merged.items()]

    def _tag_spec(self, resource_type: str, entity: sessionhost.Entity, name: str | None = None) -> list[dict]:
        return [{"ResourceType": resource_type, "Tags": self._tags(entity, name)}]

    def _create_network_block(
        self, entity: sessionhost.NetworkBlock, _state: sessionhost.reconcile.CreatedState
    ) -> dict[str, str]:
        vpc_id = self.ec2.create_vpc(
            CidrBlock=entity.cidr_block,
            TagSpecifications=self._tag_spec("vpc", entity),
        )["Vpc"]["VpcId"]
        outputs = {"id": vpc_id, "cidr_block": entity.cidr_block}

        if entity.enable_dns:
            self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
            self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})

        igw_id = None
        if entity.has_public_subnets:
            igw_id = self.ec2.create_internet_gateway(
                TagSpecifications=self._tag_spec("internet-gateway", entity),
            )["InternetGateway"]["InternetGatewayId"]
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
            outputs["internet_gateway_id"] = igw_id

        for route_table, subnets in entity.route_tables.items():
            rt_id = self.ec2.create_route_table(
                VpcId=vpc_id,
                TagSpecifications=self._tag_spec("route-table", entity, route_table),
            )["RouteTable"]["RouteTableId"]
            outputs[f"route_table:{route_table}"] = rt_id

            # private subnets are never routed to the internet
            if igw_id is not None and all(s.privacy == sessionhost.Privacy.PUBLIC for s in subnets):
                self.ec2.create_route(
                    RouteTableId=rt_id,
                    DestinationCidrBlock=sessionhost.ANY_IPV4,
                    GatewayId=igw_id,
                )

            for subnet in subnets:
                args: dict[str, typing.Any] = {
                    "VpcId": vpc_id,
                    "CidrBlock": subnet.cidr_block,
                    "TagSpecifications": self._tag_spec("subnet", entity, f"{entity.name}-{subnet.name}"),
                }
                if subnet.availability_zone:
                    args["AvailabilityZone"] = subnet.availability_zone
                subnet_id = self.ec2.create_subnet(**args)["Subnet"]["SubnetId"]
                self.ec2.associate_route_table(RouteTableId=rt_id, SubnetId=subnet_id)
                outputs[f"subnet:{subnet.name}"] = subnet_id

        return outputs

    def _permission(
        self,
        rule: sessionhost.FirewallRule,
        group: sessionhost.FirewallGroup,
        group_id: str,
        state: sessionhost.reconcile.CreatedState,
    ) -> dict[str, typing.Any]:
        permission: dict[str, typing.Any] = {"IpProtocol": rule.protocol}
        if rule.protocol != sessionhost.ALL_PROTOCOLS:
            permission |= {"FromPort": rule.from_port, "ToPort": rule.to_port}

        if rule.peer_network is not None:
            key = "IpRanges" if rule.peer_network.version == 4 else "Ipv6Ranges"
            cidr_key = "CidrIp" if rule.peer_network.version == 4 else "CidrIpv6"
            permission[key] = [{cidr_key: rule.peer, "Description": rule.description}]
        else:
            peer_id = group_id if rule.peer == group.name else state.get(rule.peer, "id")
            permission["UserIdGroupPairs"] = [{"GroupId": peer_id, "Description": rule.description}]
        return permission

    def _create_firewall_group(
        self, entity: sessionhost.FirewallGroup, state: sessionhost.reconcile.CreatedState
    ) -> dict[str, str]:
        group_id = self.ec2.create_security_group(
            GroupName=entity.name,
            Description=entity.description or f"{entity.name} firewall group",
            VpcId=state.get(entity.network, "id"),
            TagSpecifications=self._tag_spec("security-group", entity),
        )["GroupId"]

        if entity.ingress:
            self.ec2.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[self._permission(r, entity, group_id, state) for r in entity.ingress],
            )

        # new groups start with an allow-all egress rule; keep it only when undeclared or declared
        extra_egress = [
            r
            for r in entity.egress
            if not (r.protocol == sessionhost.ALL_PROTOCOLS and r.peer == sessionhost.ANY_IPV4)
        ]
        if extra_egress and len(extra_egress) == len(entity.egress):
            self.ec2.revoke_security_group_egress(
                GroupId=group_id,
                IpPermissions=[{"IpProtocol": sessionhost.ALL_PROTOCOLS, "IpRanges": [{"CidrIp": sessionhost.ANY_IPV4}]}],
            )
        if extra_egress:
            self.ec2.authorize_security_group_egress(
                GroupId=group_id,
                IpPermissions=[self._permission(r, entity, group_id, state) for r in extra_egress],
            )

        return {"id": group_id, "name": entity.name}

    def _create_endpoint(self, entity: sessionhost.Endpoint, state: sessionhost.reconcile.CreatedState) -> dict[str, str]:
        args: dict[str, typing.Any] = {
            "VpcEndpointType": str(entity.endpoint_type),
            "VpcId": state.get(entity.network, "id"),
            "ServiceName": f"com.amazonaws.{self.region}.{entity.service}",
            "TagSpecifications": self._tag_spec("vpc-endpoint", entity),
        }
        if entity.endpoint_type == sessionhost.EndpointType.GATEWAY:
            args["RouteTableIds"] = [state.route_table_id(entity.network, rt) for rt in entity.route_tables]
        else:
            args["SubnetIds"] = [state.subnet_id(entity.network, s) for s in entity.subnets]
            args["SecurityGroupIds"] = [state.get(g, "id") for g in entity.firewall_groups]
            args["PrivateDnsEnabled"] = entity.private_dns

        endpoint = self.ec2.create_vpc_endpoint(**args)["VpcEndpoint"]
        return {"id": endpoint["VpcEndpointId"], "service_name": args["ServiceName"]}

    def _create_identity(self, entity: sessionhost.Identity, state: sessionhost.reconcile.CreatedState) -> dict[str, str]:
        role = self.iam.create_role(
            RoleName=entity.name,
            AssumeRolePolicyDocument=json.dumps(sessionhost.aws_iam.build_assume_role_policy(entity.trusted_services)),
            Tags=self._tags(entity),
        )["Role"]

        for policy_arn in entity.managed_policy_arns:
            self.iam.attach_role_policy(RoleName=entity.name, PolicyArn=policy_arn)

        if entity.statements:
            self.iam.put_role_policy(
                RoleName=entity.name,
                PolicyName=f"{entity.name}-inline",
                PolicyDocument=json.dumps(sessionhost.aws_iam.build_policy_document(entity, state.get)),
            )

        profile_name = f"{entity.name}-profile"
        self.iam.create_instance_profile(InstanceProfileName=profile_name, Tags=self._tags(entity))
        self.iam.add_role_to_instance_profile(InstanceProfileName=profile_name, RoleName=entity.name)

        return {
            "id": role["RoleId"],
            "arn": role["Arn"],
            "name": entity.name,
            "instance_profile": profile_name,
        }

    def _create_object_store(
        self, entity: sessionhost.ObjectStore, _state: sessionhost.reconcile.CreatedState
    ) -> dict[str, str]:
        bucket = f"{entity.prefix}-{sessionhost.junkdrawer.bucket_suffix()}"
        args: dict[str, typing.Any] = {"Bucket": bucket}
        if self.region != CREATE_BUCKET_DEFAULT_REGION:
            args["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.s3.create_bucket(**args)
        self.s3.put_bucket_tagging(Bucket=bucket, Tagging={"TagSet": self._tags(entity, bucket)})

        if entity.versioning:
            self.s3.put_bucket_versioning(Bucket=bucket, VersioningConfiguration={"Status": "Enabled"})

        if entity.encryption:
            self.s3.put_bucket_encryption(
                Bucket=bucket,
                ServerSideEncryptionConfiguration={
                    "Rules": [
                        {
                            "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"},
                            "BucketKeyEnabled": True,
                        }
                    ]
                },
            )

        if entity.block_public_access:
            self.s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )

        return {"id": bucket, "name": bucket, "arn": f"arn:aws:s3:::{bucket}"}

    def _image_id(self, image: str) -> str:
        if image != sessionhost.AL2023:
            return image

        images = self.ec2.describe_images(
            Owners=[sessionhost.AMAZON_ACCOUNT_ID],
            Filters=[
                {"Name": "name", "Values": [AL2023_NAME_PATTERN]},
                {"Name": "state", "Values": ["available"]},
            ],
        )["Images"]
        if not images:
            msg = f"no {sessionhost.AL2023} image found in {self.region}"
            raise RuntimeError(msg)
        return max(images, key=lambda i: i["CreationDate"])["ImageId"]

    def _create_compute_instance(
        self, entity: sessionhost.ComputeInstance, state: sessionhost.reconcile.CreatedState
    ) -> dict[str, str]:
        network = state.subnet_owner(entity.subnet)
        args: dict[str, typing.Any] = {
            "ImageId": self._image_id(entity.image),
            "InstanceType": entity.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": state.subnet_id(network, entity.subnet),
            "SecurityGroupIds": [state.get(g, "id") for g in entity.firewall_groups],
            # IMDSv2 only
            "MetadataOptions": {"HttpTokens": "required", "HttpEndpoint": "enabled"},
            "TagSpecifications": self._tag_spec("instance", entity),
        }
        if entity.identity is not None:
            args["IamInstanceProfile"] = {"Name": state.get(entity.identity, "instance_profile")}
        if entity.user_data:
            args["UserData"] = entity.user_data

        instance = self.ec2.run_instances(**args)["Instances"][0]
        return {
            "id": instance["InstanceId"],
            "private_ip": instance.get("PrivateIpAddress", ""),
            "user_data_signature": sessionhost.junkdrawer.text_signature(entity.user_data),
        }
