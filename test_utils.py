import matplotlib.pyplot as plt
import pytest

from data import Placement, Resource, build_sample_instance
from utils import evaluate_placement_cost, format_placement, validate_placement, visualize_placement


def _by_label(instance):
    tasks = {t.label: t for t in instance.tasks}
    resources = {r.label: r for r in instance.resources}
    return tasks, resources


def test_evaluate_scenario_cost(scenario):
    tasks, resources = _by_label(scenario)
    solution = {tasks['A']: resources['E'], tasks['B']: resources['C']}
    cost = evaluate_placement_cost(scenario, solution)
    assert cost['execution'] == pytest.approx(2.0)
    assert cost['communication'] == pytest.approx(1.5)
    assert cost['total'] == pytest.approx(3.5)


def test_evaluate_rejects_unsupported_query_type(scenario):
    tasks, _ = _by_label(scenario)
    stranger = Resource('X', 'X', 5.0, Placement.CLOUD, {'Q9': 1.0})
    scenario.resources.add_resource(stranger)
    with pytest.raises(ValueError):
        evaluate_placement_cost(scenario, {tasks['A']: stranger, tasks['B']: stranger})


def test_validate_accepts_feasible_placement(scenario):
    tasks, resources = _by_label(scenario)
    validation = validate_placement(scenario, {tasks['A']: resources['E'], tasks['B']: resources['C']})
    assert validation["valid"]
    assert validation["issues"] == []


def test_validate_reports_each_violation_kind(scenario):
    tasks, resources = _by_label(scenario)
    # Source in the cloud, sink missing
    validation = validate_placement(scenario, {tasks['A']: resources['C']})
    assert not validation["valid"]
    assert validation["allocation_violations"] == 1
    assert validation["affinity_violations"] == 1

    tight = Resource('T', 'T', 0.5, Placement.EDGE, {'Q1': 1.0})
    scenario.resources.add_resource(tight)
    validation = validate_placement(scenario, {tasks['A']: tight, tasks['B']: resources['C']})
    assert validation["capacity_violations"] == 1


def test_format_placement_lists_every_task():
    instance = build_sample_instance()
    tasks, resources = _by_label(instance)
    solution = {
        tasks['ingest']: resources['gateway_1'],
        tasks['filter']: resources['gateway_1'],
        tasks['aggregate']: resources['cloud_a'],
    }
    table = format_placement(instance, solution)
    lines = table.splitlines()
    assert len(lines) == 2 + len(instance.tasks)
    assert 'gateway_1' in lines[2]
    assert 'UNASSIGNED' in lines[-1]


def test_visualize_placement_saves_png(scenario, tmp_path):
    tasks, resources = _by_label(scenario)
    solution = {tasks['A']: resources['E'], tasks['B']: resources['C']}
    fig = visualize_placement(scenario, solution, save_path=str(tmp_path / "placement"), formats=['png'], dpi=50)
    assert (tmp_path / "placement.png").exists()
    plt.close(fig)
