from __future__ import annotations

import graphlib
import typing

import sessionhost
from sessionhost.errors import CyclicDependency, UnresolvedReference

EntityT = typing.TypeVar("EntityT", bound=sessionhost.Entity)


class EntityGraph:
    """
    The single graph of declared entities that is passed through the validate, order and apply phases.

    Entities and the subnets of every network block share one namespace, so a compute instance or an
    endpoint can name a subnet directly.
    """

    _entities: dict[str, sessionhost.Entity]
    _subnets: dict[str, tuple[sessionhost.NetworkBlock, sessionhost.Subnet]]

    def __init__(self, entities: typing.Iterable[sessionhost.Entity] = ()):
        self._entities = {}
        self._subnets = {}
        for entity in entities:
            self.add(entity)

    def add(self, entity: sessionhost.Entity) -> EntityGraph:
        if entity.name in self._entities or entity.name in self._subnets:
            msg = f"name {entity.name!r} is declared more than once"
            raise ValueError(msg)

        if isinstance(entity, sessionhost.NetworkBlock):
            for subnet in entity.subnets:
                if subnet.name in self._entities or subnet.name in self._subnets:
                    msg = f"subnet name {subnet.name!r} is declared more than once"
                    raise ValueError(msg)
                self._subnets[subnet.name] = (entity, subnet)

        self._entities[entity.name] = entity
        return self

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    def __getitem__(self, name: str) -> sessionhost.Entity:
        return self._entities[name]

    def __iter__(self) -> typing.Iterator[sessionhost.Entity]:
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)

    @property
    def names(self) -> list[str]:
        return sorted(self._entities)

    def of_kind(self, cls: type[EntityT]) -> list[EntityT]:
        return sorted(
            (e for e in self._entities.values() if isinstance(e, cls)),
            key=lambda e: e.name,
        )

    def subnet(self, name: str) -> tuple[sessionhost.NetworkBlock, sessionhost.Subnet]:
        return self._subnets[name]

    def has_subnet(self, name: str) -> bool:
        return name in self._subnets

    def owner(self, target: str, subnets: bool = True) -> str | None:
        """
        The entity a name resolves to: itself or, when ``subnets`` is set, the network block carrying a
        subnet of that name. Permission statement resources resolve with ``subnets=False``; a subnet has
        no arn of its own to grant on.
        """
        if target in self._entities:
            return target
        if subnets and target in self._subnets:
            return self._subnets[target][0].name
        return None

    def unresolved(self) -> list[UnresolvedReference]:
        """Collect every reference to a name that is not declared, rather than stopping at the first."""
        errors: list[UnresolvedReference] = []
        for entity in self._entities.values():
            for ref in entity.references():
                if self.owner(ref.target, ref.subnets) is None:
                    errors.append(UnresolvedReference(entity.name, ref.field, ref.target))

            if isinstance(entity, sessionhost.Endpoint) and entity.network in self._entities:
                network = self._entities[entity.network]
                if isinstance(network, sessionhost.NetworkBlock):
                    for route_table in entity.route_tables:
                        if route_table not in network.route_tables:
                            errors.append(
                                UnresolvedReference(
                                    entity.name,
                                    "route_tables",
                                    route_table,
                                    f"is not a route table of network block {network.name!r}",
                                )
                            )
        return errors

    def dependencies(self, name: str) -> set[str]:
        """
        :param name: the entity to inspect
        :return: the names of entities that must exist before it, by value or explicit ordering
        :raises UnresolvedReference: if it references something that is not declared
        """
        entity = self._entities[name]
        deps: set[str] = set()
        for ref in entity.references():
            target = self.owner(ref.target, ref.subnets)
            if target is None:
                raise UnresolvedReference(entity.name, ref.field, ref.target)
            if target != name:
                deps.add(target)
        return deps

    def dependents(self, name: str) -> set[str]:
        return {other for other in self._entities if name in self.dependencies(other)}

    def creation_levels(self) -> list[list[str]]:
        """
        Group entities into levels: everything in a level depends only on earlier levels, so the
        members of one level may be created in parallel.

        :raises CyclicDependency: naming the cycle, without producing any ordering
        :raises UnresolvedReference: for the first reference to an undeclared name
        """
        sorter: graphlib.TopologicalSorter[str] = graphlib.TopologicalSorter()
        for name in self.names:
            sorter.add(name, *sorted(self.dependencies(name)))

        try:
            sorter.prepare()
        except graphlib.CycleError as exc:
            raise CyclicDependency(exc.args[1]) from None

        levels: list[list[str]] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            levels.append(ready)
            sorter.done(*ready)

        return levels

    def creation_order(self) -> list[str]:
        return [name for level in self.creation_levels() for name in level]
