from __future__ import annotations

import concurrent.futures
import dataclasses
import enum
import threading
import typing

import pulumi

import sessionhost
import sessionhost.validate
from sessionhost.errors import PartialApply, ProviderRejected, SessionHostError, UnresolvedReference

if typing.TYPE_CHECKING:
    import sessionhost.graph

DEFAULT_MAX_WORKERS = 4


class GraphState(enum.StrEnum):
    DECLARED = "declared"
    VALIDATED = "validated"
    ORDERED = "ordered"
    CREATING = "creating"
    READY = "ready"
    FAILED = "failed"


@dataclasses.dataclass
class EntityRecord:
    name: str
    status: sessionhost.EntityStatus = sessionhost.EntityStatus.PENDING
    outputs: dict[str, str] = dataclasses.field(default_factory=dict)
    error: SessionHostError | None = None


class CreatedState:
    """Read access to the outputs of entities created so far, used to resolve Deferred values."""

    def __init__(self, records: typing.Mapping[str, EntityRecord]):
        self._records = records

    def get(self, entity: str, attribute: str) -> str:
        record = self._records.get(entity)
        if record is None or record.status != sessionhost.EntityStatus.READY:
            raise UnresolvedReference(entity, attribute, entity, "has not been created")
        if attribute not in record.outputs:
            raise UnresolvedReference(entity, attribute, f"{entity}.{attribute}", "is not an output of that entity")
        return record.outputs[attribute]

    def resolve(self, value: typing.Any) -> typing.Any:
        return sessionhost.resolve_value(value, self.get)

    def subnet_id(self, network: str, subnet: str) -> str:
        return self.get(network, f"subnet:{subnet}")

    def route_table_id(self, network: str, route_table: str) -> str:
        return self.get(network, f"route_table:{route_table}")

    def subnet_owner(self, subnet: str) -> str:
        """Name of the created network block that carries a subnet."""
        for record in self._records.values():
            if record.status == sessionhost.EntityStatus.READY and f"subnet:{subnet}" in record.outputs:
                return record.name
        raise UnresolvedReference("subnet", "network", subnet, "has not been created")


class Provider(typing.Protocol):
    def create(self, entity: sessionhost.Entity, state: CreatedState) -> dict[str, str]:
        """Create one entity and return its runtime outputs; raise ProviderRejected on refusal."""
        ...


class Reconciler:
    """
    Drive a graph through Declared -> Validated -> Ordered -> Creating -> Ready (or Failed).

    Entities in one dependency level are created in parallel; levels are strictly ordered. Each entity
    gets one creation attempt per pass. A failed or cancelled pass leaves what it created in place.
    """

    graph: sessionhost.graph.EntityGraph
    provider: Provider
    records: dict[str, EntityRecord]
    levels: list[list[str]]

    def __init__(
        self,
        graph: sessionhost.graph.EntityGraph,
        provider: Provider,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.graph = graph
        self.provider = provider
        self.max_workers = max_workers
        self.records = {name: EntityRecord(name=name) for name in graph.names}
        self.levels = []
        self._state = GraphState.DECLARED
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    @property
    def state(self) -> GraphState:
        return self._state

    @property
    def created(self) -> list[str]:
        return [n for n, r in self.records.items() if r.status == sessionhost.EntityStatus.READY]

    @property
    def pending(self) -> list[str]:
        return [n for n, r in self.records.items() if r.status == sessionhost.EntityStatus.PENDING]

    def cancel(self) -> None:
        """Abort the creation batch; entities already in flight finish, nothing new starts."""
        self._cancelled.set()

    def validate(self) -> Reconciler:
        self._expect(GraphState.DECLARED)
        sessionhost.validate.ensure_valid(self.graph)
        self._state = GraphState.VALIDATED
        return self

    def order(self) -> list[list[str]]:
        self._expect(GraphState.VALIDATED)
        self.levels = self.graph.creation_levels()
        self._state = GraphState.ORDERED
        return self.levels

    def apply(self) -> dict[str, EntityRecord]:
        self._expect(GraphState.ORDERED)
        self._state = GraphState.CREATING
        state = CreatedState(self.records)

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for depth, level in enumerate(self.levels):
                if self._cancelled.is_set():
                    self._fail(None)

                pulumi.log.info(f"creating level {depth}: {', '.join(level)}")
                futures = {pool.submit(self._create, name, state): name for name in level}
                failures: list[SessionHostError] = []
                for future in concurrent.futures.as_completed(futures):
                    try:
                        future.result()
                    except Exception:
                        self._state = GraphState.FAILED
                        raise
                    error = self.records[futures[future]].error
                    if error is not None:
                        failures.append(error)
                if failures:
                    self._fail(failures[0])
                if self._cancelled.is_set() and self.pending:
                    self._fail(None)

        self._state = GraphState.READY
        return self.records

    def run(self) -> dict[str, EntityRecord]:
        self.validate()
        self.order()
        return self.apply()

    def _create(self, name: str, state: CreatedState) -> None:
        record = self.records[name]
        if self._cancelled.is_set():
            return

        with self._lock:
            record.status = sessionhost.EntityStatus.CREATING

        try:
            outputs = self.provider.create(self.graph[name], state)
        except (ProviderRejected, UnresolvedReference) as exc:
            self._record_failure(record, exc)
            return
        except Exception as exc:
            error = ProviderRejected(name, type(exc).__name__, str(exc))
            error.__cause__ = exc
            self._record_failure(record, error)
            return

        with self._lock:
            record.outputs = dict(outputs)
            record.status = sessionhost.EntityStatus.READY
        pulumi.log.info(f"created {name}: {record.outputs.get('id', '')}")

    def _record_failure(self, record: EntityRecord, error: SessionHostError) -> None:
        pulumi.log.error(str(error))
        with self._lock:
            record.status = sessionhost.EntityStatus.FAILED
            record.error = error

    def _fail(self, cause: SessionHostError | None) -> typing.NoReturn:
        self._state = GraphState.FAILED
        created = self.created
        if cause is not None and len(created) == 0:
            raise cause

        pending = [n for n in self.graph.creation_order() if n not in created]
        raise PartialApply(created, pending, cause) from cause

    def _expect(self, state: GraphState) -> None:
        if self._state != state:
            msg = f"reconciler is {self._state}, expected {state}"
            raise RuntimeError(msg)
