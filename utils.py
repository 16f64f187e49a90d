import logging
from typing import Any, Dict, Mapping

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np

from data import Placement, PlacementInstance, Resource, Task, TaskRole

logger = logging.getLogger(__name__)


def _assignment_matrix(instance: PlacementInstance, solution: Mapping[Task, Resource]) -> np.ndarray:
    tasks = instance.tasks.nodes()
    resource_index = {r: k for k, r in enumerate(instance.resources.nodes())}
    assignment = np.zeros((len(tasks), len(resource_index)))
    for i, task in enumerate(tasks):
        resource = solution.get(task)
        if resource is not None:
            assignment[i, resource_index[resource]] = 1.0
    return assignment


def evaluate_placement_cost(instance: PlacementInstance, solution: Mapping[Task, Resource]) -> Dict[str, float]:
    """
    Recompute the objective of a concrete placement.

    Uses the same cost terms the placement model minimizes, so for an optimal
    solution the 'total' matches the solver's objective value.

    Parameters:
        instance: The PlacementInstance the solution belongs to.
        solution: Mapping from Task to the Resource hosting it.

    Returns:
        dict: 'execution', 'communication' and 'total' cost.
    """
    tasks = instance.tasks.nodes()
    resources = instance.resources.nodes()
    task_index = {t: i for i, t in enumerate(tasks)}
    resource_index = {r: k for k, r in enumerate(resources)}
    x = _assignment_matrix(instance, solution)

    # Execution cost matrix; NaN marks an unsupported query type
    execution_costs = np.full((len(tasks), len(resources)), np.nan)
    for i, task in enumerate(tasks):
        for k, resource in enumerate(resources):
            cost = resource.cost_for(task.query_type)
            if cost is not None:
                execution_costs[i, k] = cost

    used = x > 0
    if np.isnan(execution_costs[used]).any():
        i, k = np.argwhere(used & np.isnan(execution_costs))[0]
        raise ValueError(f"{resources[k]} cannot execute query type '{tasks[i].query_type}' of {tasks[i]}")
    execution = float(np.sum(np.where(used, execution_costs, 0.0)))

    links = instance.resources.arcs()
    communication = 0.0
    if links:
        max_latency = instance.resources.max_latency()
        source_idx = np.array([resource_index[l.source] for l in links])
        target_idx = np.array([resource_index[l.target] for l in links])
        latency = np.array([l.data.normalized_latency(max_latency) for l in links])
        placement_cost = np.array([instance.cost.placement_cost(l.source.placement, l.target.placement)
                                   for l in links])
        link_bandwidth = np.array([l.data.bandwidth for l in links])

        for edge in instance.tasks.arcs():
            i = task_index[edge.source]
            j = task_index[edge.target]
            both = x[i, source_idx] * x[j, target_idx]
            coef = latency + placement_cost * edge.data.bandwidth / link_bandwidth
            communication += float(np.dot(both, coef))

    return {
        'execution': execution,
        'communication': communication,
        'total': execution + communication,
    }


def validate_placement(instance: PlacementInstance, solution: Mapping[Task, Resource]) -> Dict[str, Any]:
    """
    Check a placement against the allocation, capacity and affinity rules.

    Parameters:
        instance: The PlacementInstance the solution belongs to.
        solution: Mapping from Task to the Resource hosting it.

    Returns:
        Dictionary with validation results
    """
    validation = {
        "valid": True,
        "allocation_violations": 0,
        "capacity_violations": 0,
        "affinity_violations": 0,
        "issues": []
    }

    # Every task placed exactly once, on a known resource
    known_resources = set(instance.resources.nodes())
    for task in instance.tasks:
        resource = solution.get(task)
        if resource is None:
            validation["allocation_violations"] += 1
            validation["issues"].append(f"{task} has no resource")
        elif resource not in known_resources:
            validation["allocation_violations"] += 1
            validation["issues"].append(f"{task} is placed on unknown {resource}")

    # Capacity
    load = {}
    for task, resource in solution.items():
        load[resource] = load.get(resource, 0.0) + task.consumption
    for resource, used in load.items():
        if used > resource.capacity + 1e-9:
            validation["capacity_violations"] += 1
            validation["issues"].append(f"{resource} is loaded {used:g} over capacity {resource.capacity:g}")

    # Entry tasks on the edge, exit tasks in the cloud
    for task, resource in solution.items():
        if task.role == TaskRole.SOURCE and resource.placement != Placement.EDGE:
            validation["affinity_violations"] += 1
            validation["issues"].append(f"Source {task} runs on non-edge {resource}")
        elif task.role == TaskRole.SINK and resource.placement != Placement.CLOUD:
            validation["affinity_violations"] += 1
            validation["issues"].append(f"Sink {task} runs on non-cloud {resource}")

    validation["valid"] = not validation["issues"]
    return validation


def format_placement(instance: PlacementInstance, solution: Mapping[Task, Resource]) -> str:
    """
    Builds a formatted table of the placement.
    Shows:
        Task  |  Role  |  Query  |  Resource  |  Tier  |  Exec cost
    """
    header = f"{'Task':<12}  {'Role':<8}  {'Query':<8}  {'Resource':<12}  {'Tier':<6}  {'Exec':>7}"
    sep_line = "-" * len(header)
    lines = [header, sep_line]

    for task in instance.tasks:
        resource = solution.get(task)
        if resource is None:
            lines.append(f"{task.label:<12}  {task.role.name:<8}  {task.query_type:<8}  {'UNASSIGNED':<12}")
            continue
        cost = resource.cost_for(task.query_type)
        cost_str = f"{cost:7.2f}" if cost is not None else f"{'N/A':>7}"
        lines.append(f"{task.label:<12}  {task.role.name:<8}  {task.query_type:<8}  "
                     f"{resource.label:<12}  {resource.placement.name:<6}  {cost_str}")

    return "\n".join(lines)


def visualize_placement(instance: PlacementInstance, solution: Mapping[Task, Resource],
                        save_path=None, formats=None, dpi=300):
    """
    Draws the task graph with nodes colored by the tier they were placed on.

    Parameters:
        instance: The PlacementInstance the solution belongs to
        solution: Mapping from Task to the Resource hosting it
        save_path: Path to save the visualization, without extension
        formats: List of file formats to save (e.g., ['png', 'pdf'])
        dpi: Resolution for raster formats

    Returns:
        The matplotlib Figure.
    """
    G = nx.DiGraph()
    for task in instance.tasks:
        resource = solution.get(task)
        G.add_node(task.id, label=task.label,
                   allocation=resource.placement.name.lower() if resource is not None else 'unassigned',
                   host=resource.label if resource is not None else '-')
    for arc in instance.tasks.arcs():
        G.add_edge(arc.source.id, arc.target.id, bandwidth=arc.data.bandwidth)

    allocation_colors = {
        'edge': '#800080',  # Purple for edge
        'cloud': '#00BFFF',  # Sky blue for cloud
        'unassigned': '#FFFFFF'  # White for unassigned
    }

    fig = plt.figure(figsize=(10, 8))
    pos = nx.spring_layout(G, seed=7)
    node_colors = [allocation_colors[G.nodes[n]['allocation']] for n in G.nodes]
    node_labels = {n: f"{G.nodes[n]['label']}\n@{G.nodes[n]['host']}" for n in G.nodes}
    edge_labels = {(u, v): f"{d['bandwidth']:g}" for u, v, d in G.edges(data=True)}

    nx.draw_networkx_nodes(G, pos, node_color=node_colors, node_size=900, alpha=0.9, edgecolors='#333333')
    nx.draw_networkx_edges(G, pos, arrows=True, arrowsize=15, width=1.5, edge_color='#666666')
    nx.draw_networkx_labels(G, pos, labels=node_labels, font_size=9, font_weight='bold')
    nx.draw_networkx_edge_labels(G, pos, edge_labels=edge_labels, font_size=8)

    legend_elements = [
        plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=color, markersize=10, label=alloc)
        for alloc, color in allocation_colors.items() if alloc != 'unassigned'
    ]
    plt.legend(handles=legend_elements, loc='upper left', title="Placement")
    plt.title("Task Placement", fontsize=18, pad=20)
    plt.axis('off')

    if save_path and formats:
        plt.tight_layout()
        for fmt in formats:
            full_path = f"{save_path}.{fmt}"
            if fmt in ['pdf', 'svg', 'eps']:
                plt.savefig(full_path, format=fmt, bbox_inches='tight', pad_inches=0.1)
            else:
                plt.savefig(full_path, format=fmt, dpi=dpi, bbox_inches='tight', pad_inches=0.1)
            logger.info(f"Saved placement visualization as {full_path}")

    return fig
