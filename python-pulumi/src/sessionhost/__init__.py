from __future__ import annotations

import dataclasses
import enum
import ipaddress
import re
import typing
import warnings

AL2023 = "al2023"
AMAZON_ACCOUNT_ID = "137112412989"
ANY_IPV4 = "0.0.0.0/0"
ALL_PROTOCOLS = "-1"
DEFAULT_INSTANCE_TYPE = "t3.micro"
DEFAULT_REGION = "us-east-1"
EC2_SERVICE_PRINCIPAL = "ec2.amazonaws.com"
HTTPS_PORT = 443
POLICY_VERSION = "2012-10-17"
SSM_MANAGED_INSTANCE_CORE_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"

# Session Manager needs all three interface endpoints to reach an instance without internet egress.
# https://docs.aws.amazon.com/systems-manager/latest/userguide/setup-create-vpc.html
SESSION_MANAGER_SERVICES = ("ssm", "ssmmessages", "ec2messages")
GATEWAY_SERVICES = frozenset(["dynamodb", "s3"])

DEFERRED_REGEX = re.compile(r"^\$\{([A-Za-z0-9_-]+)\.([A-Za-z0-9_:-]+)\}$")


class EntityKind(enum.StrEnum):
    NETWORK_BLOCK = "network_block"
    IDENTITY = "identity"
    FIREWALL_GROUP = "firewall_group"
    ENDPOINT = "endpoint"
    OBJECT_STORE = "object_store"
    COMPUTE_INSTANCE = "compute_instance"


class Privacy(enum.StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"


class Effect(enum.StrEnum):
    ALLOW = "Allow"
    DENY = "Deny"


class EndpointType(enum.StrEnum):
    INTERFACE = "Interface"
    GATEWAY = "Gateway"


class EntityStatus(enum.StrEnum):
    PENDING = "pending"
    CREATING = "creating"
    READY = "ready"
    FAILED = "failed"


class TagKeys(enum.StrEnum):
    SESSIONHOST_DECLARATION = "sessionhost/declaration"
    SESSIONHOST_ENTITY = "sessionhost/entity"
    SESSIONHOST_MANAGED_BY = "sessionhost/managed-by"


@dataclasses.dataclass(frozen=True)
class Literal:
    value: typing.Any


@dataclasses.dataclass(frozen=True)
class Deferred:
    """An attribute of another entity that is only known once that entity exists, eg: a bucket's arn."""

    entity: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.entity}.{self.attribute}}}"


Value = Literal | Deferred


def parse_value(raw: typing.Any) -> Value:
    """
    :param raw: a declared attribute value; strings of the form ``${entity.attribute}`` become Deferred
    :return: the tagged value
    """
    if isinstance(raw, Literal | Deferred):
        return raw

    if isinstance(raw, str):
        match = DEFERRED_REGEX.match(raw)
        if match is not None:
            return Deferred(entity=match.group(1), attribute=match.group(2))

    return Literal(raw)


def resolve_value(value: typing.Any, lookup: typing.Callable[[str, str], typing.Any]) -> typing.Any:
    if isinstance(value, Deferred):
        return lookup(value.entity, value.attribute)

    if isinstance(value, Literal):
        return value.value

    if isinstance(value, list | tuple):
        return [resolve_value(v, lookup) for v in value]

    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}

    return value


def resource_target(value: Value) -> str | None:
    """
    Return the name of the declared entity a statement resource points at, if any.

    ``*`` and full ARNs (``arn:...``) are external to the graph. Anything else is an entity name,
    optionally followed by a ``/suffix`` that narrows the grant to objects inside that entity.
    """
    if isinstance(value, Deferred):
        return value.entity

    raw = str(value.value)
    if raw == "*" or raw.startswith("arn:"):
        return None

    return raw.split("/", 1)[0]


def _iter_deferred(obj: typing.Any) -> typing.Iterator[Deferred]:
    if isinstance(obj, Deferred):
        yield obj
    elif dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        for field in dataclasses.fields(obj):
            yield from _iter_deferred(getattr(obj, field.name))
    elif isinstance(obj, list | tuple):
        for item in obj:
            yield from _iter_deferred(item)
    elif isinstance(obj, dict):
        for item in obj.values():
            yield from _iter_deferred(item)


def _as_tuple(obj: typing.Any, attr: str) -> None:
    object.__setattr__(obj, attr, tuple(getattr(obj, attr)))


@dataclasses.dataclass(frozen=True)
class Reference:
    field: str
    target: str
    # subnet names resolve to their network block unless the reference needs the entity itself
    subnets: bool = True


@dataclasses.dataclass(frozen=True, kw_only=True)
class Entity:
    kind: typing.ClassVar[EntityKind]

    name: str
    depends_on: tuple[str, ...] = ()
    tags: dict[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            msg = f"{self.kind} entities must have a name"
            raise ValueError(msg)
        _as_tuple(self, "depends_on")

    def references(self) -> list[Reference]:
        refs = [Reference("depends_on", target) for target in self.depends_on]
        for field in dataclasses.fields(self):
            deferred = _iter_deferred(getattr(self, field.name))
            refs.extend(Reference(field.name, d.entity, subnets=False) for d in deferred)
        return refs


@dataclasses.dataclass(frozen=True, kw_only=True)
class Subnet:
    name: str
    cidr_block: str
    privacy: Privacy = Privacy.PRIVATE
    availability_zone: str | None = None
    route_table: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "privacy", Privacy(self.privacy))
        # raises ValueError on a malformed block
        ipaddress.ip_network(self.cidr_block)

    @property
    def network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        return ipaddress.ip_network(self.cidr_block)


@dataclasses.dataclass(frozen=True, kw_only=True)
class NetworkBlock(Entity):
    kind = EntityKind.NETWORK_BLOCK

    cidr_block: str
    subnets: tuple[Subnet, ...] = ()
    enable_dns: bool = True

    def __post_init__(self):
        super().__post_init__()
        _as_tuple(self, "subnets")

        block = ipaddress.ip_network(self.cidr_block)
        seen: list[Subnet] = []
        for subnet in self.subnets:
            if subnet.network.version != block.version or not subnet.network.subnet_of(block):  # type: ignore[arg-type]
                msg = f"subnet {subnet.name!r} ({subnet.cidr_block}) is outside network block {self.cidr_block}"
                raise ValueError(msg)
            for other in seen:
                if subnet.network.overlaps(other.network):  # type: ignore[arg-type]
                    msg = f"subnets {other.name!r} and {subnet.name!r} overlap"
                    raise ValueError(msg)
            seen.append(subnet)

        zones = {s.availability_zone for s in self.subnets if s.privacy == Privacy.PRIVATE and s.availability_zone}
        if len(zones) == 1:
            warnings.warn(
                f"network block {self.name!r} places every private subnet in a single availability zone",
                stacklevel=2,
            )

    @property
    def network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        return ipaddress.ip_network(self.cidr_block)

    def subnet(self, name: str) -> Subnet | None:
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        return None

    def route_table_name(self, subnet: Subnet) -> str:
        return subnet.route_table or f"{self.name}-{subnet.privacy}"

    @property
    def route_tables(self) -> dict[str, list[Subnet]]:
        tables: dict[str, list[Subnet]] = {}
        for subnet in self.subnets:
            tables.setdefault(self.route_table_name(subnet), []).append(subnet)
        return dict(sorted(tables.items()))

    @property
    def has_public_subnets(self) -> bool:
        return any(s.privacy == Privacy.PUBLIC for s in self.subnets)


@dataclasses.dataclass(frozen=True, kw_only=True)
class Statement:
    actions: tuple[str, ...]
    resources: tuple[Value, ...]
    effect: Effect = Effect.ALLOW
    sid: str | None = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "effect", Effect(self.effect))
        except ValueError:
            msg = f"statement effect must be one of {[str(e) for e in Effect]}, got {self.effect!r}"
            raise ValueError(msg) from None

        _as_tuple(self, "actions")
        object.__setattr__(self, "resources", tuple(parse_value(r) for r in self.resources))

        if len(self.actions) == 0:
            msg = "statements must grant or deny at least one action"
            raise ValueError(msg)
        if len(self.resources) == 0:
            msg = "statements must name at least one resource"
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True, kw_only=True)
class Identity(Entity):
    kind = EntityKind.IDENTITY

    trusted_services: tuple[str, ...] = (EC2_SERVICE_PRINCIPAL,)
    managed_policy_arns: tuple[str, ...] = ()
    statements: tuple[Statement, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        _as_tuple(self, "trusted_services")
        _as_tuple(self, "managed_policy_arns")
        _as_tuple(self, "statements")

    def references(self) -> list[Reference]:
        refs = super().references()
        for i, statement in enumerate(self.statements):
            for resource in statement.resources:
                target = resource_target(resource)
                if target is not None and isinstance(resource, Literal):
                    refs.append(Reference(f"statements[{i}].resources", target, subnets=False))
        return refs


@dataclasses.dataclass(frozen=True, kw_only=True)
class FirewallRule:
    peer: str
    protocol: str = "tcp"
    from_port: int = 0
    to_port: int = 0
    description: str = ""

    def __post_init__(self):
        protocol = str(self.protocol).lower()
        if protocol == "all":
            protocol = ALL_PROTOCOLS
        object.__setattr__(self, "protocol", protocol)

        if self.from_port > self.to_port:
            msg = f"firewall rule port range {self.from_port}-{self.to_port} is inverted"
            raise ValueError(msg)

    @property
    def peer_network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network | None:
        try:
            return ipaddress.ip_network(self.peer)
        except ValueError:
            return None

    def allows(self, protocol: str, port: int) -> bool:
        if self.protocol == ALL_PROTOCOLS:
            return True
        return self.protocol == protocol and self.from_port <= port <= self.to_port


@dataclasses.dataclass(frozen=True, kw_only=True)
class FirewallGroup(Entity):
    kind = EntityKind.FIREWALL_GROUP

    network: str
    description: str = ""
    ingress: tuple[FirewallRule, ...] = ()
    egress: tuple[FirewallRule, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        _as_tuple(self, "ingress")
        _as_tuple(self, "egress")

    def references(self) -> list[Reference]:
        refs = [*super().references(), Reference("network", self.network)]
        for direction in ("ingress", "egress"):
            for rule in getattr(self, direction):
                # a group may admit its own members without depending on itself
                if rule.peer_network is None and rule.peer != self.name:
                    refs.append(Reference(f"{direction}.peer", rule.peer))
        return refs


@dataclasses.dataclass(frozen=True, kw_only=True)
class Endpoint(Entity):
    kind = EntityKind.ENDPOINT

    service: str
    network: str
    endpoint_type: EndpointType | None = None
    subnets: tuple[str, ...] = ()
    firewall_groups: tuple[str, ...] = ()
    route_tables: tuple[str, ...] = ()
    private_dns: bool = True

    def __post_init__(self):
        super().__post_init__()
        for attr in ("subnets", "firewall_groups", "route_tables"):
            _as_tuple(self, attr)

        endpoint_type = self.endpoint_type
        if endpoint_type is None:
            endpoint_type = EndpointType.GATEWAY if self.service in GATEWAY_SERVICES else EndpointType.INTERFACE
        object.__setattr__(self, "endpoint_type", EndpointType(endpoint_type))

        if self.endpoint_type == EndpointType.INTERFACE:
            if len(self.subnets) == 0 or len(self.firewall_groups) == 0:
                msg = f"interface endpoint {self.name!r} requires at least one subnet and one firewall group"
                raise ValueError(msg)
        elif len(self.route_tables) == 0:
            msg = f"gateway endpoint {self.name!r} requires at least one route table association"
            raise ValueError(msg)

    def references(self) -> list[Reference]:
        return [
            *super().references(),
            Reference("network", self.network),
            *(Reference("subnets", s) for s in self.subnets),
            *(Reference("firewall_groups", g) for g in self.firewall_groups),
        ]


@dataclasses.dataclass(frozen=True, kw_only=True)
class ObjectStore(Entity):
    kind = EntityKind.OBJECT_STORE

    bucket_prefix: str | None = None
    versioning: bool = True
    encryption: bool = True
    block_public_access: bool = True
    force_destroy: bool = False

    def __post_init__(self):
        super().__post_init__()
        disabled = [f for f in ("versioning", "encryption", "block_public_access") if not getattr(self, f)]
        if disabled:
            warnings.warn(f"object store {self.name!r} disables {', '.join(disabled)}", stacklevel=2)
        if self.force_destroy:
            warnings.warn(
                f"object store {self.name!r} sets force_destroy; its objects are deleted with it",
                stacklevel=2,
            )

    @property
    def prefix(self) -> str:
        return self.bucket_prefix or self.name


@dataclasses.dataclass(frozen=True, kw_only=True)
class ComputeInstance(Entity):
    kind = EntityKind.COMPUTE_INSTANCE

    subnet: str
    image: str = AL2023
    instance_type: str = DEFAULT_INSTANCE_TYPE
    firewall_groups: tuple[str, ...] = ()
    identity: str | None = None
    # handed to the guest verbatim; changing it never replaces the instance
    user_data: str = ""

    def __post_init__(self):
        super().__post_init__()
        _as_tuple(self, "firewall_groups")

    def references(self) -> list[Reference]:
        refs = [
            *super().references(),
            Reference("subnet", self.subnet),
            *(Reference("firewall_groups", g) for g in self.firewall_groups),
        ]
        if self.identity is not None:
            refs.append(Reference("identity", self.identity))
        return refs


ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    cls.kind: cls
    for cls in (
        NetworkBlock,
        Identity,
        FirewallGroup,
        Endpoint,
        ObjectStore,
        ComputeInstance,
    )
}
