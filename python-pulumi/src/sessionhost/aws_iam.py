from __future__ import annotations

import enum
import re
import typing

import pulumi

import sessionhost
from sessionhost.errors import SessionHostError, UnresolvedReference

if typing.TYPE_CHECKING:
    import sessionhost.graph

# (entity name, attribute) -> runtime value, eg: ("data", "arn") -> "arn:aws:s3:::data-1a2b3c4d"
ArnLookup = typing.Callable[[str, str], str]

# Objects the SSM agent and the distro package manager fetch from provider-owned buckets. Granting
# these prefixes, rather than s3:GetObject on "*", keeps the instance away from arbitrary buckets.
# https://docs.aws.amazon.com/systems-manager/latest/userguide/ssm-agent-minimum-s3-permissions.html
PACKAGE_REPOSITORY_PREFIXES = (
    "aws-ssm-{region}",
    "aws-windows-downloads-{region}",
    "amazon-ssm-{region}",
    "amazon-ssm-packages-{region}",
    "{region}-birdwatcher-prod",
    "aws-ssm-distributor-file-{region}",
    "aws-ssm-document-attachments-{region}",
    "patch-baseline-snapshot-{region}",
    "amazonlinux-2-repos-{region}",
    "al2023-repos-{region}-de612dc2",
)


class Decision(enum.StrEnum):
    ALLOWED = "allowed"
    EXPLICIT_DENY = "explicitDeny"
    IMPLICIT_DENY = "implicitDeny"


class PolicyType(enum.StrEnum):
    READ = "read"
    READ_WRITE = "read_write"


def bucket_actions(policy_type: PolicyType) -> list[str]:
    if policy_type == PolicyType.READ:
        return [
            "s3:GetObject",
            "s3:GetObjectTagging",
            "s3:ListBucket",
        ]

    if policy_type == PolicyType.READ_WRITE:
        return [
            "s3:AbortMultipartUpload",
            "s3:DeleteObject",
            "s3:GetBucketLocation",
            "s3:GetObject",
            "s3:GetObjectTagging",
            "s3:ListBucket",
            "s3:PutObject",
            "s3:PutObjectTagging",
        ]

    err_msg = f"unknown policy type: {policy_type}"
    raise ValueError(err_msg)


def bucket_statement(store: str, policy_type: PolicyType, prefix_path: str = "/") -> sessionhost.Statement:
    """
    Scope an identity to one declared object store: the store itself plus the objects beneath it.

    :param store: the name of the object store entity
    :param policy_type: read or read_write
    :param prefix_path: narrow object access to a key prefix
    """
    resources = [store]
    if prefix_path == "/":
        resources.append(f"{store}/*")
    else:
        prefix = prefix_path.removeprefix("/").removesuffix("/")
        resources += [f"{store}/{prefix}", f"{store}/{prefix}/*"]

    return sessionhost.Statement(
        sid=f"{store.replace('-', '').replace('_', '').title()}{policy_type.title().replace('_', '')}",
        actions=tuple(bucket_actions(policy_type)),
        resources=tuple(resources),
    )


def package_repository_statement(region: str) -> sessionhost.Statement:
    return sessionhost.Statement(
        sid="PackageRepositories",
        actions=("s3:GetObject",),
        resources=tuple(f"arn:aws:s3:::{p.format(region=region)}/*" for p in PACKAGE_REPOSITORY_PREFIXES),
    )


def build_assume_role_policy(trusted_services: typing.Iterable[str]) -> dict[str, typing.Any]:
    return {
        "Version": sessionhost.POLICY_VERSION,
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {"Service": sorted(trusted_services)},
            }
        ],
    }


def resource_pattern(value: sessionhost.Value, lookup: ArnLookup | None = None) -> str:
    """
    Render a statement resource as the string it matches against.

    Without a lookup (before anything exists) a declared entity renders as its own name, and a
    Deferred renders as its placeholder, which keeps evaluation usable on a declaration alone.
    """
    if isinstance(value, sessionhost.Deferred):
        return lookup(value.entity, value.attribute) if lookup is not None else str(value)

    raw = str(value.value)
    target = sessionhost.resource_target(value)
    if target is None or lookup is None:
        return raw

    arn = lookup(target, "arn")
    suffix = raw[len(target) :]
    if isinstance(arn, pulumi.Output):
        return pulumi.Output.concat(arn, suffix)  # type: ignore[return-value]
    return arn + suffix


def build_policy_document(identity: sessionhost.Identity, lookup: ArnLookup | None = None) -> dict[str, typing.Any]:
    statements = []
    for statement in identity.statements:
        rendered: dict[str, typing.Any] = {
            "Effect": str(statement.effect),
            "Action": list(statement.actions),
            "Resource": [resource_pattern(r, lookup) for r in statement.resources],
        }
        if statement.sid:
            rendered = {"Sid": statement.sid} | rendered
        statements.append(rendered)

    return {"Version": sessionhost.POLICY_VERSION, "Statement": statements}


def validate_permissions(graph: sessionhost.graph.EntityGraph) -> list[SessionHostError]:
    """
    Check that every statement resource of every identity resolves to a declared entity.

    Literal and Deferred resources resolve with the same rule as graph references, entities only: a
    subnet name is not a grantable resource. Deferred attributes are resolved later.
    """
    errors: list[SessionHostError] = []
    for identity in graph.of_kind(sessionhost.Identity):
        for i, statement in enumerate(identity.statements):
            for resource in statement.resources:
                target = sessionhost.resource_target(resource)
                if target is not None and graph.owner(target, subnets=False) is None:
                    errors.append(UnresolvedReference(identity.name, f"statements[{i}].resources", target))
    return errors


def matches(pattern: str, value: str, *, case_sensitive: bool = True) -> bool:
    """IAM wildcards: ``*`` matches any run of characters, ``?`` exactly one. Everything else is literal."""
    regex = "".join(".*" if c == "*" else "." if c == "?" else re.escape(c) for c in pattern)
    flags = re.DOTALL if case_sensitive else re.DOTALL | re.IGNORECASE
    return re.fullmatch(regex, value, flags) is not None


def statement_applies(
    statement: sessionhost.Statement,
    action: str,
    resource: str,
    lookup: ArnLookup | None = None,
) -> bool:
    return any(matches(a, action, case_sensitive=False) for a in statement.actions) and any(
        matches(resource_pattern(r, lookup), resource) for r in statement.resources
    )


def evaluate(
    identity: sessionhost.Identity,
    action: str,
    resource: str,
    lookup: ArnLookup | None = None,
) -> Decision:
    """
    Evaluate an identity's inline statements for one request with deny-overrides semantics: any
    matching Deny wins, otherwise any matching Allow, otherwise the request is implicitly denied.

    :param resource: an entity name (``store-x``, ``store-x/key``) or, given a lookup, a runtime arn
    """
    decision = Decision.IMPLICIT_DENY
    for statement in identity.statements:
        if not statement_applies(statement, action, resource, lookup):
            continue
        if statement.effect == sessionhost.Effect.DENY:
            return Decision.EXPLICIT_DENY
        decision = Decision.ALLOWED
    return decision
