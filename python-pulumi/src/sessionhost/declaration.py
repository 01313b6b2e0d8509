from __future__ import annotations

import copy
import dataclasses
import pathlib
import typing

import deepmerge  # type: ignore
import yaml

import sessionhost
import sessionhost.aws_iam
import sessionhost.graph
import sessionhost.paths

API_VERSION = "sessionhost/v1"
KIND = "SessionHostDeclaration"
DEFAULT_VARIANT = "full"

# Merged beneath every entity of a kind; a declaration's spec.defaults is merged over these.
KIND_DEFAULTS: dict[str, dict[str, typing.Any]] = {
    str(sessionhost.EntityKind.NETWORK_BLOCK): {"enable_dns": True},
    str(sessionhost.EntityKind.IDENTITY): {
        "managed_policy_arns": [sessionhost.SSM_MANAGED_INSTANCE_CORE_ARN],
    },
    str(sessionhost.EntityKind.FIREWALL_GROUP): {},
    str(sessionhost.EntityKind.ENDPOINT): {"private_dns": True},
    str(sessionhost.EntityKind.OBJECT_STORE): {
        "versioning": True,
        "encryption": True,
        "block_public_access": True,
        "force_destroy": False,
    },
    str(sessionhost.EntityKind.COMPUTE_INSTANCE): {
        "image": sessionhost.AL2023,
        "instance_type": sessionhost.DEFAULT_INSTANCE_TYPE,
    },
}


@dataclasses.dataclass(frozen=True)
class Declaration:
    name: str
    region: str
    graph: sessionhost.graph.EntityGraph
    tags: dict[str, str] = dataclasses.field(default_factory=dict)

    @property
    def required_tags(self) -> dict[str, str]:
        return self.tags | {
            str(sessionhost.TagKeys.SESSIONHOST_DECLARATION): self.name,
            str(sessionhost.TagKeys.SESSIONHOST_MANAGED_BY): "sessionhost",
        }


def _subnet(raw: dict[str, typing.Any]) -> sessionhost.Subnet:
    return sessionhost.Subnet(**raw)


def _rules(raw: list[dict[str, typing.Any]] | None) -> tuple[sessionhost.FirewallRule, ...]:
    return tuple(sessionhost.FirewallRule(**r) for r in raw or [])


def _statements(spec: dict[str, typing.Any], region: str) -> tuple[sessionhost.Statement, ...]:
    statements = [sessionhost.Statement(**s) for s in spec.pop("statements", [])]

    # storage_access: [{store: data, policy: read_write, prefix: /}]
    for grant in spec.pop("storage_access", []):
        statements.append(
            sessionhost.aws_iam.bucket_statement(
                grant["store"],
                sessionhost.aws_iam.PolicyType(grant.get("policy", sessionhost.aws_iam.PolicyType.READ)),
                grant.get("prefix", "/"),
            )
        )

    if spec.pop("package_repositories", False):
        statements.append(sessionhost.aws_iam.package_repository_statement(region))

    return tuple(statements)


def build_entity(raw: dict[str, typing.Any], region: str, defaults: dict[str, typing.Any]) -> sessionhost.Entity:
    """
    Build one entity from its declared mapping.

    :param raw: the mapping under ``spec.entities``; ``kind`` selects the entity type
    :param region: used to render region-specific shorthands such as ``package_repositories``
    :param defaults: per-kind defaults the mapping is merged over
    :raises ValueError: for an unknown kind, unknown fields or invalid values
    """
    raw = copy.deepcopy(raw)
    kind_name = raw.pop("kind", None)
    try:
        kind = sessionhost.EntityKind(kind_name)
    except ValueError:
        msg = f"unknown entity kind {kind_name!r} for {raw.get('name', '<unnamed>')!r}"
        raise ValueError(msg) from None

    spec = deepmerge.always_merger.merge(copy.deepcopy(defaults.get(str(kind), {})), raw)

    match kind:
        case sessionhost.EntityKind.NETWORK_BLOCK:
            spec["subnets"] = tuple(_subnet(s) for s in spec.get("subnets", []))
        case sessionhost.EntityKind.IDENTITY:
            spec["managed_policy_arns"] = tuple(dict.fromkeys(spec.get("managed_policy_arns", [])))
            spec["statements"] = _statements(spec, region)
        case sessionhost.EntityKind.FIREWALL_GROUP:
            spec["ingress"] = _rules(spec.get("ingress"))
            spec["egress"] = _rules(spec.get("egress"))

    cls = sessionhost.ENTITY_TYPES[kind]
    try:
        return cls(**spec)
    except TypeError as exc:
        msg = f"invalid {kind} declaration {spec.get('name', '<unnamed>')!r}: {exc}"
        raise ValueError(msg) from exc


def parse_declaration(cfg_dict: dict[str, typing.Any], region: str | None = None, source: str = "<string>") -> Declaration:
    if cfg_dict.get("kind") != KIND or cfg_dict.get("apiVersion") != API_VERSION:
        msg = (
            f"mismatched declaration kind={cfg_dict.get('kind')!r} "
            f"apiVersion={cfg_dict.get('apiVersion')!r} in {source!r}"
        )
        raise ValueError(msg)

    spec = cfg_dict.get("spec") or {}
    region = region or spec.get("region") or sessionhost.DEFAULT_REGION
    defaults = deepmerge.always_merger.merge(copy.deepcopy(KIND_DEFAULTS), spec.get("defaults") or {})

    graph = sessionhost.graph.EntityGraph()
    for raw in spec.get("entities") or []:
        graph.add(build_entity(raw, region, defaults))

    return Declaration(
        name=cfg_dict.get("metadata", {}).get("name", pathlib.Path(source).stem),
        region=region,
        graph=graph,
        tags={str(k): str(v) for k, v in (spec.get("tags") or {}).items()},
    )


def load_declaration(path: pathlib.Path, region: str | None = None) -> Declaration:
    cfg_dict = yaml.safe_load(path.read_text())
    if not isinstance(cfg_dict, dict):
        msg = f"declaration {str(path)!r} is empty or not a mapping"
        raise ValueError(msg)
    return parse_declaration(cfg_dict, region=region, source=str(path))


def load_variant(
    name: str = DEFAULT_VARIANT,
    region: str | None = None,
    paths: sessionhost.paths.Paths | None = None,
) -> Declaration:
    paths = paths or sessionhost.paths.Paths()
    path = paths.declaration(name)
    if not path.exists():
        msg = f"no declaration named {name!r} in {str(paths.root)!r}; known: {', '.join(paths.variants) or 'none'}"
        raise FileNotFoundError(msg)
    return load_declaration(path, region=region)
