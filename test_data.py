import pytest

from data import (CostModel, LinkProperty, Placement, Resource, ResourceGraph, Task, TaskGraph, TaskRole,
                  build_sample_instance)


def test_cost_model_from_raw_normalizes_by_largest():
    cost = CostModel.from_raw(cloud_cloud=1.0, edge_edge=2.0, cloud_edge=4.0)
    assert cost.cloud_cloud == pytest.approx(0.25)
    assert cost.edge_edge == pytest.approx(0.5)
    assert cost.cloud_edge == pytest.approx(1.0)
    assert cost.reference_cost == 4.0


def test_cost_model_from_raw_all_zero():
    cost = CostModel.from_raw(0.0, 0.0, 0.0)
    assert (cost.cloud_cloud, cost.edge_edge, cost.cloud_edge) == (0.0, 0.0, 0.0)


def test_placement_cost_selection():
    cost = CostModel(cloud_cloud=0.1, edge_edge=0.2, cloud_edge=0.3)
    assert cost.placement_cost(Placement.CLOUD, Placement.CLOUD) == 0.1
    assert cost.placement_cost(Placement.EDGE, Placement.EDGE) == 0.2
    assert cost.placement_cost(Placement.EDGE, Placement.CLOUD) == 0.3
    assert cost.placement_cost(Placement.CLOUD, Placement.EDGE) == 0.3


def test_cost_model_rejects_negative_multiplier():
    with pytest.raises(ValueError):
        CostModel(cloud_cloud=-1.0, edge_edge=0.0, cloud_edge=0.0)


def test_normalized_latency():
    link = LinkProperty(latency=3.0, bandwidth=10.0)
    assert link.normalized_latency(6.0) == pytest.approx(0.5)
    assert link.normalized_latency(0.0) == 0.0


@pytest.mark.parametrize("latency, bandwidth", [(-1.0, 10.0), (1.0, 0.0)])
def test_link_property_validation(latency, bandwidth):
    with pytest.raises(ValueError):
        LinkProperty(latency=latency, bandwidth=bandwidth)


def test_resource_cost_for_unsupported_query_type():
    resource = Resource('r', 'r', 1.0, Placement.EDGE, {'Q1': 2.0})
    assert resource.cost_for('Q1') == 2.0
    assert resource.cost_for('Q2') is None


def test_resource_costs_are_copied():
    costs = {'Q1': 2.0}
    resource = Resource('r', 'r', 1.0, Placement.EDGE, costs)
    costs['Q1'] = 99.0
    assert resource.cost_for('Q1') == 2.0


def test_task_rejects_negative_consumption():
    with pytest.raises(ValueError):
        Task('t', 't', -1.0, 'Q1')


def test_graphs_keep_insertion_order_and_roles():
    tasks = TaskGraph()
    c = tasks.add_task(Task('c', 'c', 1.0, 'Q1', TaskRole.SINK))
    a = tasks.add_task(Task('a', 'a', 1.0, 'Q1', TaskRole.SOURCE))
    b = tasks.add_task(Task('b', 'b', 1.0, 'Q1'))
    tasks.add_edge(a, b, 1.0)
    tasks.add_edge(b, c, 2.0)

    assert tasks.nodes() == [c, a, b]
    assert [(arc.source, arc.target) for arc in tasks.arcs()] == [(a, b), (b, c)]
    assert tasks.entry_tasks() == [a]
    assert tasks.exit_tasks() == [c]
    assert len(tasks) == 3


def test_graph_rejects_duplicates_and_unknown_endpoints():
    tasks = TaskGraph()
    a = tasks.add_task(Task('a', 'a', 1.0, 'Q1'))
    with pytest.raises(ValueError):
        tasks.add_task(Task('a', 'a', 1.0, 'Q1'))
    with pytest.raises(ValueError):
        tasks.add_edge(a, Task('z', 'z', 1.0, 'Q1'), 1.0)


def test_max_latency():
    resources = ResourceGraph()
    assert resources.max_latency() == 0.0
    e = resources.add_resource(Resource('e', 'e', 1.0, Placement.EDGE))
    c = resources.add_resource(Resource('c', 'c', 1.0, Placement.CLOUD))
    resources.add_link(e, c, latency=3.0, bandwidth=1.0)
    resources.add_link(c, e, latency=7.0, bandwidth=1.0)
    assert resources.max_latency() == 7.0


def test_sample_instance_shape():
    instance = build_sample_instance()
    assert len(instance.tasks) == 4
    assert len(instance.resources) == 4
    assert [t.role for t in instance.tasks.entry_tasks()] == [TaskRole.SOURCE]
    assert [t.role for t in instance.tasks.exit_tasks()] == [TaskRole.SINK]
    assert set(instance.task_by_id()) == {'t1', 't2', 't3', 't4'}
