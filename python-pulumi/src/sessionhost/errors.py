from __future__ import annotations

import typing


class SessionHostError(Exception):
    """Base class for every error raised while validating or reconciling a declaration."""


class UnresolvedReference(SessionHostError):
    def __init__(self, entity: str, field: str, target: str, reason: str = "is not declared"):
        self.entity = entity
        self.field = field
        self.target = target
        self.reason = reason
        super().__init__(f"{entity}.{field} references {target!r}, which {reason}")


class CyclicDependency(SessionHostError):
    def __init__(self, cycle: typing.Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")


class UnreachableEndpoint(SessionHostError):
    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"endpoint {endpoint!r} is unreachable: {reason}")


class ProviderRejected(SessionHostError):
    """The control plane refused an operation. ``code`` and ``reason`` are the provider's own."""

    def __init__(self, entity: str, code: str, reason: str):
        self.entity = entity
        self.code = code
        self.reason = reason
        super().__init__(f"provider rejected {entity!r}: {code}: {reason}")


class PartialApply(SessionHostError):
    def __init__(
        self,
        created: typing.Sequence[str],
        pending: typing.Sequence[str],
        cause: SessionHostError | None = None,
    ):
        self.created = list(created)
        self.pending = list(pending)
        self.cause = cause
        why = str(cause) if cause is not None else "cancelled"
        super().__init__(
            f"apply aborted ({why}); created={self.created} pending={self.pending}. "
            "Created entities were left in place: re-run reconciliation or remove them manually."
        )


class ValidationFailed(SessionHostError):
    def __init__(self, errors: typing.Sequence[SessionHostError]):
        self.errors = list(errors)
        super().__init__("\n".join(["declaration failed validation:", *(f"  - {e}" for e in self.errors)]))
