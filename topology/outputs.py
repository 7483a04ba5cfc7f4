from typing import Any, Mapping, Protocol

from attrs import define, field

from topology.errors import UnrealizedResourceError
from topology.graph import ResourceGraph
from topology.models import Output, frozen_mapping

# Realized attributes per entity name, e.g. {"frontend-distribution": {"domain_name": ...}}
ResourceHandles = Mapping[str, Mapping[str, Any]]


class RealizationEngine(Protocol):
    """What the core expects from whatever turns a graph into infrastructure."""

    def realize(self, graph: ResourceGraph) -> ResourceHandles:
        ...

    def teardown(self, graph: ResourceGraph) -> None:
        ...


@define(slots=True, frozen=True)
class OutputSet:
    endpoints: Mapping[str, Any] = field(converter=frozen_mapping)

    def __getitem__(self, key: str) -> Any:
        return self.endpoints[key]

    def __iter__(self):
        return iter(self.endpoints)

    def __len__(self) -> int:
        return len(self.endpoints)


def resolve_outputs(graph: ResourceGraph, handles: ResourceHandles) -> OutputSet:
    """Resolve every declared Output against the realized resources."""
    endpoints = {}
    for output in graph.of_type(Output):
        realized = handles.get(output.target)
        if realized is None or not realized.get(output.attribute):
            raise UnrealizedResourceError(output.target, output.attribute)
        endpoints[output.name] = realized[output.attribute]
    return OutputSet(endpoints)
