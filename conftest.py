import matplotlib

matplotlib.use("Agg")

import pytest

from data import CostModel, Placement, PlacementInstance, Resource, ResourceGraph, Task, TaskGraph, TaskRole


def two_by_two(role_a=TaskRole.SOURCE, role_b=TaskRole.SINK, cost=None, edge_cost=1.0, cloud_cost=1.0,
               capacity=2.0, with_link=True):
    """
    Two tasks A -> B (bandwidth 5) on an edge resource E and a cloud resource C
    joined by one link E -> C (latency 2, bandwidth 10).
    """
    tasks = TaskGraph()
    a = tasks.add_task(Task('A', 'A', 1.0, 'Q1', role_a))
    b = tasks.add_task(Task('B', 'B', 1.0, 'Q1', role_b))
    tasks.add_edge(a, b, bandwidth=5.0)

    resources = ResourceGraph()
    e = resources.add_resource(Resource('E', 'E', capacity, Placement.EDGE, {'Q1': edge_cost}))
    c = resources.add_resource(Resource('C', 'C', capacity, Placement.CLOUD, {'Q1': cloud_cost}))
    if with_link:
        resources.add_link(e, c, latency=2.0, bandwidth=10.0)

    if cost is None:
        cost = CostModel(cloud_cloud=1.0, edge_edge=1.0, cloud_edge=1.0)
    return PlacementInstance(tasks, resources, cost)


@pytest.fixture
def scenario():
    return two_by_two()


@pytest.fixture
def decomposition():
    """
    Both tasks free, each resource fits one task. Placing A on E and B on C
    pays the E -> C link; the reverse placement pays nothing for communication.
    """
    tasks = TaskGraph()
    a = tasks.add_task(Task('A', 'A', 1.0, 'Q1'))
    b = tasks.add_task(Task('B', 'B', 1.0, 'Q1'))
    tasks.add_edge(a, b, bandwidth=2.0)

    resources = ResourceGraph()
    e = resources.add_resource(Resource('E', 'E', 1.0, Placement.EDGE, {'Q1': 1.0}))
    c = resources.add_resource(Resource('C', 'C', 1.0, Placement.CLOUD, {'Q1': 3.0}))
    resources.add_link(e, c, latency=4.0, bandwidth=2.0)

    cost = CostModel(cloud_cloud=0.2, edge_edge=0.4, cloud_edge=0.5)
    return PlacementInstance(tasks, resources, cost)
