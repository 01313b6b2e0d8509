from __future__ import annotations

import json
import pathlib
import typing

import pulumi
import pulumi_aws as aws
import pulumi_random

import sessionhost
import sessionhost.aws_iam
import sessionhost.declaration
import sessionhost.outputs
import sessionhost.validate

AMI_NAME_REGEX = "al2023-ami-202*"
AMI_ARCHITECTURE = "x86_64"


class AWSSessionHost(pulumi.ComponentResource):
    """
    Realise a validated declaration with pulumi_aws resources, one entity at a time in creation order.

    Deferred references are handed to dependents as pulumi Outputs, so the engine sees the same
    dependency edges the graph does.
    """

    declaration: sessionhost.declaration.Declaration
    resources: dict[str, pulumi.Resource]
    entity_outputs: dict[str, dict[str, pulumi.Output[str]]]

    @classmethod
    def autoload(cls) -> AWSSessionHost:
        config = pulumi.Config("sessionhost")
        region = config.get("region") or aws.get_region().name
        declaration_path = config.get("declaration")
        if declaration_path is not None:
            declaration = sessionhost.declaration.load_declaration(pathlib.Path(declaration_path), region=region)
        else:
            declaration = sessionhost.declaration.load_variant(
                config.get("variant") or sessionhost.declaration.DEFAULT_VARIANT,
                region=region,
            )
        return cls(declaration=declaration)

    def __init__(
        self,
        declaration: sessionhost.declaration.Declaration,
        *args,
        **kwargs,
    ):
        super().__init__(
            f"sessionhost:{self.__class__.__name__}",
            declaration.name,
            *args,
            **kwargs,
        )

        self.declaration = declaration
        self.name = declaration.name
        self.tags = declaration.required_tags
        self.resources = {}
        self.entity_outputs = {}

        sessionhost.validate.ensure_valid(declaration.graph)

        for name in declaration.graph.creation_order():
            entity = declaration.graph[name]
            pulumi.log.info(f"defining {entity.kind} {name}")
            getattr(self, f"_define_{entity.kind}")(entity)

        outputs = self._project()
        for key, value in outputs.items():
            pulumi.export(key, value)

        self.register_outputs(outputs)

    def _get(self, entity: str, attribute: str) -> pulumi.Output[str]:
        return self.entity_outputs[entity][attribute]

    def _tags(self, entity: sessionhost.Entity, name: str | None = None) -> dict[str, str]:
        return (
            self.tags
            | entity.tags
            | {
                str(sessionhost.TagKeys.SESSIONHOST_ENTITY): entity.name,
                "Name": name or f"{self.name}-{entity.name}",
            }
        )

    def _opts(self, entity: sessionhost.Entity, **kwargs) -> pulumi.ResourceOptions:
        return pulumi.ResourceOptions(
            parent=self,
            depends_on=[self.resources[d] for d in entity.depends_on if d in self.resources],
            **kwargs,
        )

    def _define_network_block(self, entity: sessionhost.NetworkBlock):
        vpc = aws.ec2.Vpc(
            f"{self.name}-{entity.name}",
            cidr_block=entity.cidr_block,
            enable_dns_hostnames=entity.enable_dns,
            enable_dns_support=entity.enable_dns,
            tags=self._tags(entity),
            opts=self._opts(entity),
        )
        self.resources[entity.name] = vpc
        outputs: dict[str, pulumi.Output[str]] = {"id": vpc.id, "cidr_block": vpc.cidr_block}

        igw = None
        if entity.has_public_subnets:
            igw = aws.ec2.InternetGateway(
                f"{self.name}-{entity.name}-igw",
                vpc_id=vpc.id,
                tags=self._tags(entity, f"{self.name}-{entity.name}-igw"),
                opts=pulumi.ResourceOptions(parent=vpc),
            )

        for route_table, subnets in entity.route_tables.items():
            routes = []
            if igw is not None and all(s.privacy == sessionhost.Privacy.PUBLIC for s in subnets):
                routes.append(aws.ec2.RouteTableRouteArgs(cidr_block=sessionhost.ANY_IPV4, gateway_id=igw.id))

            rt = aws.ec2.RouteTable(
                f"{self.name}-{route_table}",
                vpc_id=vpc.id,
                routes=routes,
                tags=self._tags(entity, f"{self.name}-{route_table}"),
                opts=pulumi.ResourceOptions(parent=vpc),
            )
            outputs[f"route_table:{route_table}"] = rt.id

            for subnet in subnets:
                sn = aws.ec2.Subnet(
                    f"{self.name}-{subnet.name}",
                    vpc_id=vpc.id,
                    cidr_block=subnet.cidr_block,
                    availability_zone=subnet.availability_zone,
                    map_public_ip_on_launch=False,
                    tags=self._tags(entity, f"{self.name}-{subnet.name}") | {"Privacy": str(subnet.privacy)},
                    opts=pulumi.ResourceOptions(parent=vpc),
                )
                aws.ec2.RouteTableAssociation(
                    f"{self.name}-{subnet.name}",
                    route_table_id=rt.id,
                    subnet_id=sn.id,
                    opts=pulumi.ResourceOptions(parent=sn),
                )
                outputs[f"subnet:{subnet.name}"] = sn.id

        self.entity_outputs[entity.name] = outputs

    def _rule_args(self, rule: sessionhost.FirewallRule, group: sessionhost.FirewallGroup) -> dict[str, typing.Any]:
        args: dict[str, typing.Any] = {
            "protocol": rule.protocol,
            "from_port": 0 if rule.protocol == sessionhost.ALL_PROTOCOLS else rule.from_port,
            "to_port": 0 if rule.protocol == sessionhost.ALL_PROTOCOLS else rule.to_port,
            "description": rule.description or None,
        }
        peer = rule.peer_network
        if peer is not None:
            args["cidr_blocks" if peer.version == 4 else "ipv6_cidr_blocks"] = [rule.peer]
        elif rule.peer == group.name:
            args["self"] = True
        else:
            args["security_groups"] = [self._get(rule.peer, "id")]
        return args

    def _define_firewall_group(self, entity: sessionhost.FirewallGroup):
        egress = [aws.ec2.SecurityGroupEgressArgs(**self._rule_args(r, entity)) for r in entity.egress]
        if len(egress) == 0:
            # pulumi_aws removes the provider's default egress rule; restore it when nothing is declared
            egress = [
                aws.ec2.SecurityGroupEgressArgs(
                    protocol=sessionhost.ALL_PROTOCOLS,
                    from_port=0,
                    to_port=0,
                    cidr_blocks=[sessionhost.ANY_IPV4],
                )
            ]

        sg = aws.ec2.SecurityGroup(
            f"{self.name}-{entity.name}",
            name=f"{self.name}-{entity.name}",
            description=entity.description or f"{entity.name} firewall group",
            vpc_id=self._get(entity.network, "id"),
            ingress=[aws.ec2.SecurityGroupIngressArgs(**self._rule_args(r, entity)) for r in entity.ingress],
            egress=egress,
            tags=self._tags(entity),
            opts=self._opts(entity),
        )
        self.resources[entity.name] = sg
        self.entity_outputs[entity.name] = {"id": sg.id, "name": sg.name}

    def _define_endpoint(self, entity: sessionhost.Endpoint):
        svc = aws.ec2.get_vpc_endpoint_service(
            service=entity.service,
            service_type=str(entity.endpoint_type),
            opts=pulumi.InvokeOptions(parent=self),
        )

        args = aws.ec2.VpcEndpointArgs(
            service_name=svc.service_name,
            vpc_endpoint_type=str(entity.endpoint_type),
            vpc_id=self._get(entity.network, "id"),
            tags=self._tags(entity),
        )

        if entity.endpoint_type == sessionhost.EndpointType.GATEWAY:
            args.route_table_ids = [self._get(entity.network, f"route_table:{rt}") for rt in entity.route_tables]
        else:
            args.private_dns_enabled = entity.private_dns
            args.security_group_ids = [self._get(g, "id") for g in entity.firewall_groups]
            args.subnet_ids = [self._get(entity.network, f"subnet:{s}") for s in entity.subnets]

        endpoint = aws.ec2.VpcEndpoint(
            f"{self.name}-{entity.name}",
            args,
            opts=self._opts(entity),
        )
        self.resources[entity.name] = endpoint
        self.entity_outputs[entity.name] = {"id": endpoint.id, "service_name": endpoint.service_name}

    def _define_identity(self, entity: sessionhost.Identity):
        role = aws.iam.Role(
            f"{self.name}-{entity.name}",
            name=f"{self.name}-{entity.name}",
            assume_role_policy=json.dumps(sessionhost.aws_iam.build_assume_role_policy(entity.trusted_services)),
            tags=self._tags(entity),
            opts=self._opts(entity, delete_before_replace=True),
        )

        for i, policy_arn in enumerate(entity.managed_policy_arns):
            aws.iam.RolePolicyAttachment(
                f"{self.name}-{entity.name}-managed-{i}",
                role=role.name,
                policy_arn=policy_arn,
                opts=pulumi.ResourceOptions(parent=role, delete_before_replace=True),
            )

        if entity.statements:
            aws.iam.RolePolicy(
                f"{self.name}-{entity.name}-inline",
                role=role.id,
                policy=pulumi.Output.json_dumps(sessionhost.aws_iam.build_policy_document(entity, self._get)),
                opts=pulumi.ResourceOptions(parent=role),
            )

        profile = aws.iam.InstanceProfile(
            f"{self.name}-{entity.name}-profile",
            name=f"{self.name}-{entity.name}-profile",
            role=role.name,
            opts=pulumi.ResourceOptions(parent=role, delete_before_replace=True),
        )

        self.resources[entity.name] = role
        self.entity_outputs[entity.name] = {
            "id": role.id,
            "arn": role.arn,
            "name": role.name,
            "instance_profile": profile.name,
        }

    def _define_object_store(self, entity: sessionhost.ObjectStore):
        # bucket names are global
        suffix = pulumi_random.RandomId(
            f"{self.name}-{entity.name}-suffix",
            byte_length=4,
            opts=pulumi.ResourceOptions(parent=self),
        )

        bucket_args = aws.s3.BucketArgs(
            bucket=pulumi.Output.concat(entity.prefix, "-", suffix.hex),
            force_destroy=entity.force_destroy,
            tags=self._tags(entity),
        )
        if entity.encryption:
            bucket_args.server_side_encryption_configuration = aws.s3.BucketServerSideEncryptionConfigurationArgs(
                rule=aws.s3.BucketServerSideEncryptionConfigurationRuleArgs(
                    apply_server_side_encryption_by_default=aws.s3.BucketServerSideEncryptionConfigurationRuleApplyServerSideEncryptionByDefaultArgs(
                        sse_algorithm="AES256",
                    ),
                    bucket_key_enabled=True,
                ),
            )

        bucket = aws.s3.Bucket(
            f"{self.name}-{entity.name}",
            bucket_args,
            opts=self._opts(entity),
        )

        if entity.block_public_access:
            aws.s3.BucketPublicAccessBlock(
                f"{self.name}-{entity.name}-public-access-block",
                bucket=bucket.id,
                block_public_acls=True,
                block_public_policy=True,
                ignore_public_acls=True,
                restrict_public_buckets=True,
                opts=pulumi.ResourceOptions(parent=bucket),
            )

        if entity.versioning:
            aws.s3.BucketVersioningV2(
                f"{self.name}-{entity.name}-versioning",
                bucket=bucket.id,
                versioning_configuration=aws.s3.BucketVersioningV2VersioningConfigurationArgs(
                    status="Enabled",
                ),
                opts=pulumi.ResourceOptions(parent=bucket),
            )

        self.resources[entity.name] = bucket
        self.entity_outputs[entity.name] = {"id": bucket.id, "name": bucket.bucket, "arn": bucket.arn}

    def _image_id(self, image: str) -> str:
        if image != sessionhost.AL2023:
            return image

        ami = aws.ec2.get_ami(
            most_recent=True,
            name_regex=AMI_NAME_REGEX,
            filters=[
                aws.ec2.GetAmiFilterArgs(
                    name="owner-id",
                    values=[sessionhost.AMAZON_ACCOUNT_ID],
                ),
                aws.ec2.GetAmiFilterArgs(
                    name="architecture",
                    values=[AMI_ARCHITECTURE],
                ),
            ],
        )
        return ami.id

    def _define_compute_instance(self, entity: sessionhost.ComputeInstance):
        network, _ = self.declaration.graph.subnet(entity.subnet)

        args = aws.ec2.InstanceArgs(
            ami=self._image_id(entity.image),
            instance_type=entity.instance_type,
            subnet_id=self._get(network.name, f"subnet:{entity.subnet}"),
            vpc_security_group_ids=[self._get(g, "id") for g in entity.firewall_groups],
            associate_public_ip_address=False,
            metadata_options=aws.ec2.InstanceMetadataOptionsArgs(
                http_endpoint="enabled",
                http_tokens="required",
            ),
            user_data=entity.user_data or None,
            user_data_replace_on_change=False,
            tags=self._tags(entity),
        )
        if entity.identity is not None:
            args.iam_instance_profile = self._get(entity.identity, "instance_profile")

        instance = aws.ec2.Instance(
            f"{self.name}-{entity.name}",
            args,
            opts=self._opts(entity),
        )
        self.resources[entity.name] = instance
        self.entity_outputs[entity.name] = {"id": instance.id, "private_ip": instance.private_ip}

    def _project(self) -> dict[str, pulumi.Output[str]]:
        graph = self.declaration.graph
        outputs: dict[str, pulumi.Output[str]] = {}

        instances = graph.of_kind(sessionhost.ComputeInstance)
        if instances:
            instance_id = self._get(instances[0].name, "id")
            outputs["instance_id"] = instance_id
            outputs["instance_private_ip"] = self._get(instances[0].name, "private_ip")
            outputs["ssm_connect_command"] = pulumi.Output.format(
                sessionhost.outputs.SSM_CONNECT_COMMAND,
                instance_id=instance_id,
                region=self.declaration.region,
            )

        endpoint = sessionhost.outputs.session_endpoint(graph)
        if endpoint is not None:
            outputs["ssm_endpoint_id"] = self._get(endpoint.name, "id")

        stores = graph.of_kind(sessionhost.ObjectStore)
        if stores:
            bucket_name = self._get(stores[0].name, "name")
            outputs["bucket_name"] = bucket_name
            outputs["s3_upload_command"] = pulumi.Output.format(
                sessionhost.outputs.S3_UPLOAD_COMMAND,
                bucket_name=bucket_name,
            )

        return outputs
