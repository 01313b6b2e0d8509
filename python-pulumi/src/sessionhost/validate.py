from __future__ import annotations

import typing

import sessionhost
import sessionhost.aws_iam
import sessionhost.connectivity
from sessionhost.errors import CyclicDependency, SessionHostError, UnresolvedReference, ValidationFailed

if typing.TYPE_CHECKING:
    import sessionhost.graph


def check_placement(graph: sessionhost.graph.EntityGraph) -> list[SessionHostError]:
    errors: list[SessionHostError] = []
    for instance in graph.of_kind(sessionhost.ComputeInstance):
        if not graph.has_subnet(instance.subnet):
            continue
        _, subnet = graph.subnet(instance.subnet)
        if subnet.privacy != sessionhost.Privacy.PRIVATE:
            errors.append(
                UnresolvedReference(
                    instance.name,
                    "subnet",
                    instance.subnet,
                    "is public; compute instances are only placed in private subnets",
                )
            )

        if instance.identity is not None and instance.identity in graph:
            if not isinstance(graph[instance.identity], sessionhost.Identity):
                errors.append(UnresolvedReference(instance.name, "identity", instance.identity, "is not an identity"))
    return errors


def check_graph(graph: sessionhost.graph.EntityGraph) -> list[SessionHostError]:
    """
    Run every static check over a declared graph and collect the findings.

    Dangling references are reported once, from the graph; the ordering check only runs when
    every name resolves.
    """
    errors: list[SessionHostError] = []
    errors.extend(graph.unresolved())

    if len(errors) == 0:
        try:
            graph.creation_levels()
        except CyclicDependency as exc:
            errors.append(exc)

    errors.extend(e for e in sessionhost.aws_iam.validate_permissions(graph) if not _duplicate(e, errors))
    errors.extend(check_placement(graph))
    errors.extend(sessionhost.connectivity.check_connectivity(graph))
    return errors


def _duplicate(error: SessionHostError, errors: list[SessionHostError]) -> bool:
    return any(str(error) == str(e) for e in errors)


def ensure_valid(graph: sessionhost.graph.EntityGraph) -> None:
    errors = check_graph(graph)
    if errors:
        raise ValidationFailed(errors)
