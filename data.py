from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, NamedTuple, Optional, Any

import networkx as nx


####################################
# SECTION: CORE ENUMERATIONS
####################################

class TaskRole(Enum):
    """
    TaskRole defines where a task sits in the task graph:
      - SOURCE: Entry task, must run on an edge resource.
      - SINK: Exit task, must run on a cloud resource.
      - INTERNAL: Any other task, free to run anywhere.
    """
    SOURCE = 0  # Entry task (pinned to edge)
    SINK = 1  # Exit task (pinned to cloud)
    INTERNAL = 2  # Unconstrained


class Placement(Enum):
    """
    Placement defines the tier a resource belongs to:
      - EDGE: Resource close to the data sources.
      - CLOUD: Resource in the cloud platform.
    """
    EDGE = 0
    CLOUD = 1


####################################
# SECTION: CORE DATA STRUCTURES
####################################

@dataclass(frozen=True)
class Task:
    """A task of the task graph; immutable once loaded."""
    id: str
    label: str
    consumption: float  # Capacity units used on the hosting resource
    query_type: str  # Selects the execution cost on a resource
    role: TaskRole = TaskRole.INTERNAL

    def __post_init__(self):
        if self.consumption < 0:
            raise ValueError(f"Task {self.id} has negative consumption {self.consumption}")

    def __str__(self):
        return f"Task#{self.id} ({self.label})"


@dataclass(frozen=True)
class Resource:
    """
    A compute resource of the resource graph.

    The costs mapping holds the execution cost per query type. A query type
    missing from the mapping is not supported by the resource.
    """
    id: str
    label: str
    capacity: float
    placement: Placement
    costs: Mapping[str, float] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self):
        if self.capacity < 0:
            raise ValueError(f"Resource {self.id} has negative capacity {self.capacity}")
        # Private copy so the frozen resource cannot change under the model
        object.__setattr__(self, 'costs', dict(self.costs))

    def cost_for(self, query_type: str) -> Optional[float]:
        return self.costs.get(query_type)

    def __str__(self):
        return f"Resource#{self.id} ({self.label})"


@dataclass(frozen=True)
class EdgeProperty:
    """Bandwidth demand between two adjacent tasks."""
    bandwidth: float

    def __post_init__(self):
        if self.bandwidth < 0:
            raise ValueError(f"Edge bandwidth must be non-negative, got {self.bandwidth}")


@dataclass(frozen=True)
class LinkProperty:
    """Latency and bandwidth capacity of a link between two resources."""
    latency: float
    bandwidth: float

    def __post_init__(self):
        if self.latency < 0:
            raise ValueError(f"Link latency must be non-negative, got {self.latency}")
        if self.bandwidth <= 0:
            raise ValueError(f"Link bandwidth must be positive, got {self.bandwidth}")

    def normalized_latency(self, max_latency: float) -> float:
        """
        Latency relative to the slowest link of the resource graph.

        Parameters:
            max_latency (float): Largest latency over all links.

        Returns:
            float: latency / max_latency, or 0.0 when max_latency is 0.
        """
        if max_latency <= 0:
            return 0.0
        return self.latency / max_latency


class DirectedGraphArc(NamedTuple):
    """An arc of a directed graph together with its payload"""
    source: Any
    target: Any
    data: Any


####################################
# SECTION: GRAPHS
####################################

class _DirectedGraph:
    """
    Thin wrapper around a networkx DiGraph.

    Nodes are reported in insertion order, which networkx preserves, and arcs
    grouped by source node in that order, so two graphs built from the same
    input iterate identically.
    """

    _kind = 'node'

    def __init__(self):
        self.graph = nx.DiGraph()

    def _add_node(self, node):
        if node in self.graph:
            raise ValueError(f"Duplicate {self._kind}: {node}")
        self.graph.add_node(node)
        return node

    def _add_arc(self, source, target, data):
        if source not in self.graph or target not in self.graph:
            raise ValueError(f"Arc {source} -> {target} references an unknown {self._kind}")
        self.graph.add_edge(source, target, data=data)
        return DirectedGraphArc(source, target, data)

    def nodes(self) -> List[Any]:
        return list(self.graph.nodes)

    def arcs(self) -> List[DirectedGraphArc]:
        return [DirectedGraphArc(u, v, d['data']) for u, v, d in self.graph.edges(data=True)]

    def __iter__(self) -> Iterator[Any]:
        return iter(self.graph.nodes)

    def __len__(self):
        return self.graph.number_of_nodes()


class TaskGraph(_DirectedGraph):
    """Precedence graph of the tasks; arcs carry an EdgeProperty."""

    _kind = 'task'

    def add_task(self, task: Task) -> Task:
        return self._add_node(task)

    def add_edge(self, source: Task, target: Task, bandwidth: float) -> DirectedGraphArc:
        return self._add_arc(source, target, EdgeProperty(bandwidth))

    def entry_tasks(self) -> List[Task]:
        """Tasks without predecessors."""
        return [t for t in self.graph.nodes if self.graph.in_degree(t) == 0]

    def exit_tasks(self) -> List[Task]:
        """Tasks without successors."""
        return [t for t in self.graph.nodes if self.graph.out_degree(t) == 0]


class ResourceGraph(_DirectedGraph):
    """Network of resources; arcs carry a LinkProperty."""

    _kind = 'resource'

    def add_resource(self, resource: Resource) -> Resource:
        return self._add_node(resource)

    def add_link(self, source: Resource, target: Resource, latency: float, bandwidth: float) -> DirectedGraphArc:
        return self._add_arc(source, target, LinkProperty(latency, bandwidth))

    def max_latency(self) -> float:
        """Largest link latency, 0.0 for a graph without links."""
        max_latency = 0.0
        for arc in self.arcs():
            if arc.data.latency > max_latency:
                max_latency = arc.data.latency
        return max_latency


####################################
# SECTION: COST NORMALIZATION
####################################

@dataclass(frozen=True)
class CostModel:
    """
    Relative communication cost multipliers.

    cloud_cloud, edge_edge and cloud_edge are the normalized multipliers used in
    the objective. reference_cost records the raw value they were normalized
    against (1.0 when the multipliers are given already normalized).
    """
    cloud_cloud: float
    edge_edge: float
    cloud_edge: float
    reference_cost: float = 1.0

    def __post_init__(self):
        for name in ('cloud_cloud', 'edge_edge', 'cloud_edge', 'reference_cost'):
            if getattr(self, name) < 0:
                raise ValueError(f"CostModel.{name} must be non-negative, got {getattr(self, name)}")

    @classmethod
    def from_raw(cls, cloud_cloud: float, edge_edge: float, cloud_edge: float) -> 'CostModel':
        """
        Normalize raw communication costs by the largest of them.

        Parameters:
            cloud_cloud (float): Raw cost of a cloud to cloud transfer.
            edge_edge (float): Raw cost of an edge to edge transfer.
            cloud_edge (float): Raw cost of a transfer crossing tiers.

        Returns:
            CostModel: Multipliers in [0, 1]. All zero when every raw cost is 0.
        """
        reference = max(cloud_cloud, edge_edge, cloud_edge)
        if reference <= 0:
            return cls(0.0, 0.0, 0.0, 0.0)
        return cls(cloud_cloud / reference, edge_edge / reference, cloud_edge / reference, reference)

    def placement_cost(self, source: Placement, target: Placement) -> float:
        if source == target:
            if source == Placement.CLOUD:
                return self.cloud_cloud
            return self.edge_edge
        return self.cloud_edge


@dataclass
class PlacementInstance:
    """The fully built input of a placement model."""
    tasks: TaskGraph
    resources: ResourceGraph
    cost: CostModel

    def task_by_id(self) -> Dict[str, Task]:
        return {t.id: t for t in self.tasks}

    def resource_by_id(self) -> Dict[str, Resource]:
        return {r.id: r for r in self.resources}


####################################
# FUNCTION: build_sample_instance
####################################
def build_sample_instance() -> PlacementInstance:
    """
    Build a small sensor-to-dashboard pipeline on a two-tier network.

    Tasks 'ingest' (SOURCE) and 'report' (SINK) are pinned by their roles;
    'filter' and 'aggregate' are free. Two edge gateways and two cloud
    servers are fully linked, edge links being fast but with little
    capacity, cloud links the other way around.

    Returns:
        PlacementInstance: The sample instance.
    """
    tasks = TaskGraph()
    ingest = tasks.add_task(Task('t1', 'ingest', 2.0, 'stream', TaskRole.SOURCE))
    filt = tasks.add_task(Task('t2', 'filter', 3.0, 'stream'))
    aggregate = tasks.add_task(Task('t3', 'aggregate', 4.0, 'batch'))
    report = tasks.add_task(Task('t4', 'report', 1.0, 'batch', TaskRole.SINK))
    tasks.add_edge(ingest, filt, bandwidth=8.0)
    tasks.add_edge(filt, aggregate, bandwidth=4.0)
    tasks.add_edge(aggregate, report, bandwidth=1.0)

    resources = ResourceGraph()
    edge1 = resources.add_resource(Resource('r1', 'gateway_1', 5.0, Placement.EDGE,
                                            {'stream': 2.0, 'batch': 6.0}))
    edge2 = resources.add_resource(Resource('r2', 'gateway_2', 4.0, Placement.EDGE,
                                            {'stream': 2.5, 'batch': 6.5}))
    cloud1 = resources.add_resource(Resource('r3', 'cloud_a', 10.0, Placement.CLOUD,
                                             {'stream': 3.0, 'batch': 1.5}))
    cloud2 = resources.add_resource(Resource('r4', 'cloud_b', 10.0, Placement.CLOUD,
                                             {'stream': 3.5, 'batch': 1.0}))

    # (source, target, latency ms, bandwidth Mbps)
    links = [
        (edge1, edge2, 2.0, 50.0),
        (edge2, edge1, 2.0, 50.0),
        (edge1, cloud1, 20.0, 100.0),
        (edge1, cloud2, 25.0, 100.0),
        (edge2, cloud1, 22.0, 100.0),
        (edge2, cloud2, 24.0, 100.0),
        (cloud1, cloud2, 5.0, 1000.0),
        (cloud2, cloud1, 5.0, 1000.0),
    ]
    for source, target, latency, bandwidth in links:
        resources.add_link(source, target, latency, bandwidth)

    cost = CostModel.from_raw(cloud_cloud=1.0, edge_edge=2.0, cloud_edge=4.0)
    return PlacementInstance(tasks, resources, cost)
