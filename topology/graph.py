"""Graph builder: declares entities in dependency order and hands off a
read-only graph.

Entities are declared one at a time. A declaration may only reference
entities that already exist, which makes the dependency relation a DAG by
construction. Edges are stored as ``(dependent, dependency)`` name pairs.
"""
import os
from contextlib import contextmanager
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Iterable, Iterator, Optional, Type, TypeVar, Union

import attrs
from aws_lambda_powertools import Logger

import common.constants as constants
from topology.errors import (
    DeclarationAbortedError,
    DuplicateDeclarationError,
    InvalidPolicyError,
    TopologyError,
    UnresolvedReferenceError,
)
from topology.models import (
    AccessGrant,
    Distribution,
    Entity,
    Handle,
    IngressRule,
    LoadBalancer,
    NetworkSegment,
    RemovalPolicy,
    SecurityBoundary,
)

logger = Logger(
    service=constants.TOPOLOGY_LOGGER_SERVICE,
    level=os.getenv(constants.LOG_LEVEL_ENV_VAR, "INFO").upper(),
)

E = TypeVar("E", bound=Entity)
Ref = Union[Handle, str]


def _name_of(ref: Ref) -> str:
    return ref.name if isinstance(ref, Handle) else ref


class ResourceGraph:
    """Read-only view over a fully declared topology."""

    def __init__(self, entities: dict[str, Entity], edges: Iterable[tuple[str, str]]):
        self._entities = MappingProxyType(dict(entities))
        self._edges = frozenset(edges)
        self._positions = {name: index for index, name in enumerate(self._entities)}

    @property
    def entities(self):
        return self._entities

    @property
    def edges(self) -> frozenset[tuple[str, str]]:
        return self._edges

    def __contains__(self, ref: Ref) -> bool:
        return _name_of(ref) in self._entities

    def __iter__(self) -> Iterator[Entity]:
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)

    def get(self, ref: Ref) -> Entity:
        name = _name_of(ref)
        try:
            return self._entities[name]
        except KeyError:
            raise UnresolvedReferenceError("graph", name) from None

    def of_type(self, entity_type: Type[E]) -> list[E]:
        return [e for e in self._entities.values() if isinstance(e, entity_type)]

    def single(self, entity_type: Type[E]) -> E:
        found = self.of_type(entity_type)
        if len(found) != 1:
            raise TopologyError(
                f"expected exactly one {entity_type.__name__}, found {len(found)}"
            )
        return found[0]

    def dependencies_of(self, ref: Ref) -> set[str]:
        name = _name_of(ref)
        return {dependency for dependent, dependency in self._edges if dependent == name}

    def dependents_of(self, ref: Ref) -> set[str]:
        name = _name_of(ref)
        return {dependent for dependent, dependency in self._edges if dependency == name}

    def topological_order(self) -> list[str]:
        """Names ordered so every entity follows all of its dependencies.

        Ties are broken by declaration order, which keeps the result stable.
        """
        sorter = TopologicalSorter()
        for name in self._entities:
            sorter.add(name, *sorted(self.dependencies_of(name), key=self._position))
        sorter.prepare()
        order: list[str] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=self._position)
            order.extend(ready)
            sorter.done(*ready)
        return order

    def teardown_order(self) -> list[str]:
        """Names to delete at teardown: reverse dependency order.

        Retained resources and resources the graph does not own (imports) are
        left alone.
        """
        return [
            name
            for name in reversed(self.topological_order())
            if self._entities[name].owned
            and getattr(self._entities[name], "removal_policy", RemovalPolicy.DESTROY)
            is not RemovalPolicy.RETAIN
        ]

    def grants_for(self, resource: Ref) -> list[AccessGrant]:
        name = _name_of(resource)
        return [grant for grant in self.of_type(AccessGrant) if grant.resource == name]

    def ingress_to(self, boundary: Ref) -> list[IngressRule]:
        name = _name_of(boundary)
        return [rule for rule in self.of_type(IngressRule) if rule.destination == name]

    @property
    def network(self) -> NetworkSegment:
        return self.single(NetworkSegment)

    def _position(self, name: str) -> int:
        return self._positions[name]


class GraphBuilder:
    """Single writer that assembles the graph.

    Any failed declaration aborts the builder: ``build`` will then refuse to
    hand off a partial graph.
    """

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._edges: set[tuple[str, str]] = set()
        self._failure: Optional[TopologyError] = None
        self._built = False

    def __contains__(self, ref: Ref) -> bool:
        return _name_of(ref) in self._entities

    @property
    def aborted(self) -> bool:
        return self._failure is not None

    def get(self, ref: Ref) -> Entity:
        name = _name_of(ref)
        if name not in self._entities:
            raise UnresolvedReferenceError("builder", name)
        return self._entities[name]

    def handle(self, ref: Ref) -> Handle:
        entity = self.get(ref)
        return Handle(entity.name, entity.kind)

    def of_type(self, entity_type: Type[E]) -> list[E]:
        return [e for e in self._entities.values() if isinstance(e, entity_type)]

    def declare(self, entity: Entity, deps: Iterable[Ref] = ()) -> Handle:
        """Add ``entity`` and its edges.

        ``deps`` are extra ordering edges on top of the references the entity
        carries itself. Both must point at declared entities.
        """
        with self._guard():
            self._ensure_open()
            if entity.name in self._entities:
                raise DuplicateDeclarationError(entity.name)
            dependencies = self._resolve(entity, list(entity.references()) + list(deps))
            entity.check(self._lookup(entity))
            self._entities[entity.name] = entity
            self._edges.update((entity.name, dependency) for dependency in dependencies)
            for claimed, changes in entity.claims().items():
                self._entities[claimed] = attrs.evolve(self._entities[claimed], **changes)
            logger.debug(
                "Declared entity",
                extra={"entity": entity.name, "kind": entity.kind, "depends_on": dependencies},
            )
            return Handle(entity.name, entity.kind)

    def replace(self, updated: Entity, deps: Iterable[Ref] = ()) -> Handle:
        """Swap an entity for an evolved copy while the graph is being declared.

        New references become additional edges of the existing node. They must
        point at declared entities that do not themselves depend on it.
        """
        with self._guard():
            self._ensure_open()
            current = self.get(updated.name)
            if type(current) is not type(updated):
                raise InvalidPolicyError(
                    f"cannot replace {current.kind} '{current.name}' with {updated.kind}"
                )
            dependencies = self._resolve(updated, list(updated.references()) + list(deps))
            for dependency in dependencies:
                if updated.name in self._reachable_from(dependency):
                    raise InvalidPolicyError(
                        f"'{updated.name}' cannot depend on '{dependency}', which "
                        "already depends on it"
                    )
            updated.check(self._lookup(updated))
            self._entities[updated.name] = updated
            self._edges.update((updated.name, dependency) for dependency in dependencies)
            return Handle(updated.name, updated.kind)

    def evolve(self, ref: Ref, deps: Iterable[Ref] = (), **changes) -> Handle:
        with self.step():
            updated = attrs.evolve(self.get(ref), **changes)
            return self.replace(updated, deps=deps)

    @contextmanager
    def step(self) -> Iterator[None]:
        """Run a multi-part declaration step.

        Any TopologyError raised inside, including checks made before the
        first ``declare``, aborts the builder.
        """
        with self._guard():
            self._ensure_open()
            yield

    def build(self) -> ResourceGraph:
        """Validate graph-wide invariants and hand off a read-only graph."""
        with self._guard():
            self._ensure_open()
            graph = ResourceGraph(self._entities, self._edges)
            self._validate(graph)
            try:
                graph.topological_order()
            except CycleError as exc:
                raise InvalidPolicyError(f"dependency cycle: {exc.args[1]}") from exc
            self._built = True
            logger.info(
                "Topology declared",
                extra={"entities": len(graph), "edges": len(graph.edges)},
            )
            return graph

    # ---------- internals ----------

    def _ensure_open(self) -> None:
        if self._failure is not None:
            raise DeclarationAbortedError(
                f"declaration aborted after: {self._failure}"
            ) from self._failure
        if self._built:
            raise DeclarationAbortedError("graph was already handed off")

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except DeclarationAbortedError:
            raise
        except TopologyError as exc:
            if self._failure is None:
                self._failure = exc
                logger.error("Declaration aborted", extra={"error": str(exc)})
            raise

    def _resolve(self, entity: Entity, refs: list[Ref]) -> list[str]:
        names = [_name_of(ref) for ref in refs]
        for name in names:
            if name == entity.name:
                raise InvalidPolicyError(f"'{entity.name}' cannot depend on itself")
            if name not in self._entities:
                raise UnresolvedReferenceError(entity.name, name)
        return list(dict.fromkeys(names))

    def _lookup(self, entity: Entity):
        def resolve(name: str) -> Entity:
            if name not in self._entities:
                raise UnresolvedReferenceError(entity.name, name)
            return self._entities[name]

        return resolve

    @staticmethod
    def _validate(graph: ResourceGraph) -> None:
        for distribution in graph.of_type(Distribution):
            grants = [
                grant
                for grant in graph.grants_for(distribution.origin)
                if grant.consumer == distribution.name
            ]
            if len(grants) != 1:
                raise InvalidPolicyError(
                    f"distribution '{distribution.name}' must reach its origin through "
                    f"exactly one access grant, found {len(grants)}"
                )
        public_boundaries = {
            balancer.boundary
            for balancer in graph.of_type(LoadBalancer)
            if balancer.public and balancer.boundary
        }
        for rule in graph.of_type(IngressRule):
            if rule.is_unrestricted and rule.destination not in public_boundaries:
                raise InvalidPolicyError(
                    f"ingress rule '{rule.name}' opens '{rule.destination}' to "
                    f"{rule.source_cidr}; only public load balancers may be open"
                )
        for boundary in graph.of_type(SecurityBoundary):
            owners = [
                entity.name
                for entity in graph
                if getattr(entity, "boundary", None) == boundary.name
            ]
            if len(owners) > 1:
                raise InvalidPolicyError(
                    f"security boundary '{boundary.name}' is shared by {owners}"
                )

    def _reachable_from(self, name: str) -> set[str]:
        seen: set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop()
            for dependent, dependency in self._edges:
                if dependent == current and dependency not in seen:
                    seen.add(dependency)
                    stack.append(dependency)
        return seen
