from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple
import time as time_module
import logging

import numpy as np

from data import PlacementInstance, Placement, Resource, Task, TaskRole, build_sample_instance
from backends import (SolverBackend, SolverConfig, SolverBackendError, MissingVariableError,
                      UnsupportedQueryTypeError, InfeasibleModelError, create_backend)
from utils import format_placement, validate_placement

# Constants and configuration data
logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


class ConstraintRecord(NamedTuple):
    """Backend independent copy of a constraint row, for inspection and comparison"""
    name: str
    terms: Tuple[Tuple[str, float], ...]  # (variable name, coefficient)
    sense: str  # '<=' or '=='
    rhs: float


@dataclass
class PlacementResult:
    """Outcome of solve_placement: either a full assignment or infeasible"""
    feasible: bool
    assignment: Optional[Dict[str, str]] = None  # task id -> resource id
    objective: Optional[float] = None


def variable_name(task: Task, resource: Resource) -> str:
    return f'x("{task.label}")("{resource.label}")'


class VariableSpace:
    """
    One boolean decision variable per (task, resource) pair.

    Tasks and resources get stable integer indices in graph order; the
    variables live in a 2-D object array indexed by those integers.
    """

    def __init__(self, tasks: List[Task], resources: List[Resource]):
        self.tasks = list(tasks)
        self.resources = list(resources)
        self.task_index = {task: i for i, task in enumerate(self.tasks)}
        self.resource_index = {resource: k for k, resource in enumerate(self.resources)}
        self.variables = np.full((len(self.tasks), len(self.resources)), None, dtype=object)
        self.names = np.full((len(self.tasks), len(self.resources)), None, dtype=object)
        self.pruned = np.zeros((len(self.tasks), len(self.resources)), dtype=bool)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.variables.shape

    def build(self, backend: SolverBackend) -> None:
        for i, task in enumerate(self.tasks):
            for k, resource in enumerate(self.resources):
                name = variable_name(task, resource)
                self.variables[i, k] = backend.bool_var(name)
                self.names[i, k] = name

    def index(self, task: Task, resource: Resource) -> Tuple[int, int]:
        try:
            i = self.task_index[task]
            k = self.resource_index[resource]
        except KeyError:
            raise MissingVariableError(f"No decision variable for ({task}, {resource})") from None
        if self.variables[i, k] is None:
            raise MissingVariableError(f"Decision variable for ({task}, {resource}) was not created yet")
        return i, k

    def get(self, task: Task, resource: Resource):
        i, k = self.index(task, resource)
        return self.variables[i, k]

    def at(self, i: int, k: int):
        var = self.variables[i, k]
        if var is None:
            raise MissingVariableError(f"Decision variable ({i}, {k}) was not created yet")
        return var


class PlacementModel:
    """
    Integer program placing the tasks of a PlacementInstance on its resources.

    The whole model is built in the constructor: variables first, then the
    capacity, allocation and placement-affinity constraints, then the
    objective. The solver context is acquired here as well and must be
    released exactly once through cleanup(); used as a context manager the
    model releases it on every exit path.
    """

    def __init__(self, instance: PlacementInstance, config: Optional[SolverConfig] = None,
                 backend: Optional[SolverBackend] = None):
        self.instance = instance
        self.config = config if config is not None else SolverConfig()
        self.backend = backend if backend is not None else create_backend(self.config)
        self.released = False
        self.solve_seconds = 0.0

        self.variables = VariableSpace(instance.tasks.nodes(), instance.resources.nodes())
        self.constraints: List[ConstraintRecord] = []
        self.fixed_variables: List[str] = []
        self.linear_objective: List[Tuple[str, float]] = []
        self.quadratic_objective: List[Tuple[str, str, float]] = []
        self.auxiliary_variables: List[str] = []
        self.max_latency = 0.0

        try:
            # Variables first! Every builder below looks them up.
            self._add_variables()
            self._add_capacity_constraints()
            self._add_allocation_constraints()
            self._add_type_placement_constraints()
            self._add_objective()
            if self.config.export_path:
                self.export_model(self.config.export_path)
        except BaseException:
            self._release_after_failure()
            raise

        logger.info(f"Built placement model: {len(self.variables.tasks)} tasks x "
                    f"{len(self.variables.resources)} resources, {len(self.constraints)} constraints, "
                    f"{len(self.fixed_variables)} fixed variables, "
                    f"{len(self.auxiliary_variables)} auxiliary variables")

    ####################################
    # SECTION: SOLVE AND EXTRACTION
    ####################################

    def solve(self) -> None:
        """Run the solver engine. Blocks until the engine returns."""
        start = time_module.time()
        self.backend.solve()
        self.solve_seconds = time_module.time() - start
        if self.backend.is_feasible():
            logger.info(f"Solved with {self.backend.name} in {self.solve_seconds:.3f}s, "
                        f"objective={self.backend.objective_value():.4f}")
        else:
            logger.info(f"Solver {self.backend.name} found no feasible placement "
                        f"({self.solve_seconds:.3f}s)")

    def is_feasible(self) -> bool:
        return self.backend.is_feasible()

    def objective_value(self) -> float:
        if not self.is_feasible():
            raise InfeasibleModelError("No feasible solution to read an objective value from")
        return self.backend.objective_value()

    def get_solution(self) -> Dict[Task, Resource]:
        """
        Decode the variable values into a task to resource mapping.

        For every task the resources are scanned in graph order and the first
        one whose variable reaches the assignment threshold is taken, so
        numerical ties are broken the same way for identical inputs.

        Returns:
            Dict[Task, Resource]: One entry per task.
        """
        if not self.is_feasible():
            raise InfeasibleModelError("Solution requested from a model without a feasible solve")
        threshold = self.config.assignment_threshold
        result = {}
        for i, task in enumerate(self.variables.tasks):
            for k, resource in enumerate(self.variables.resources):
                if self.backend.value(self.variables.at(i, k)) >= threshold:
                    result[task] = resource
                    break
        return result

    def get_assignment(self) -> Dict[str, str]:
        return {task.id: resource.id for task, resource in self.get_solution().items()}

    def export_model(self, path: str) -> None:
        """Write the model as LP text for offline inspection."""
        self.backend.export(path)
        logger.info(f"Exported placement model to {path}")

    def cleanup(self) -> None:
        """
        Release the solver context. Must be called exactly once; a second
        call raises SolverBackendError.
        """
        if self.released:
            raise SolverBackendError("Solver context was already released")
        self.released = True
        self.backend.end()

    def _release_after_failure(self) -> None:
        """Release the solver without letting a release failure replace the current outcome."""
        try:
            self.cleanup()
        except Exception as e:
            logger.error(f"Failed to release solver context: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.released:
            self._release_after_failure()
        return False

    ####################################
    # SECTION: MODEL CONSTRUCTION
    ####################################

    def _add_le(self, terms, rhs, name):
        self.backend.add_le([(self.variables.at(i, k), coef) for (i, k), coef in terms], rhs, name)
        self._record(terms, '<=', rhs, name)

    def _add_eq(self, terms, rhs, name):
        self.backend.add_eq([(self.variables.at(i, k), coef) for (i, k), coef in terms], rhs, name)
        self._record(terms, '==', rhs, name)

    def _record(self, terms, sense, rhs, name):
        record = ConstraintRecord(name, tuple((self.variables.names[i, k], coef) for (i, k), coef in terms),
                                  sense, rhs)
        self.constraints.append(record)
        logger.debug(f"{name}: {' + '.join(f'{c:g}*{n}' for n, c in record.terms)} {sense} {rhs:g}")

    def _add_variables(self):
        self.variables.build(self.backend)

    def _add_capacity_constraints(self):
        """
        sum(i in tasks) x[i][k] * consumption[i] <= capacity[k], for every resource k.

        A task larger than the resource can never sit on it, so that variable is
        fixed to 0 as well and its cost terms are left out of the objective.
        """
        for resource in self.variables.resources:
            terms = []
            for task in self.variables.tasks:
                i, k = self.variables.index(task, resource)
                terms.append(((i, k), task.consumption))
                if task.consumption > resource.capacity:
                    self._prune(i, k)
            self._add_le(terms, resource.capacity, f'capacity_constraint("{resource.label}")')

    def _add_allocation_constraints(self):
        """sum(k in resources) x[i][k] == 1, for every task i"""
        for task in self.variables.tasks:
            terms = []
            for resource in self.variables.resources:
                terms.append((self.variables.index(task, resource), 1.0))
            self._add_eq(terms, 1, f'allocation_resources("{task.label}")')

    def _add_type_placement_constraints(self):
        """Sources only on edge resources, sinks only on cloud resources. Bounds, not rows."""
        for task in self.variables.tasks:
            for resource in self.variables.resources:
                i, k = self.variables.index(task, resource)
                if ((task.role == TaskRole.SOURCE and resource.placement != Placement.EDGE)
                        or (task.role == TaskRole.SINK and resource.placement != Placement.CLOUD)):
                    self._prune(i, k)
            if self.variables.resources and self.variables.pruned[self.variables.task_index[task]].all():
                logger.warning(f"No resource may host {task} ({task.role.name})")

    def _prune(self, i, k):
        if self.variables.pruned[i, k]:
            return
        self.backend.fix_to_zero(self.variables.at(i, k))
        self.variables.pruned[i, k] = True
        self.fixed_variables.append(self.variables.names[i, k])

    def _add_objective(self):
        """
        Minimize execution cost + communication cost.

        execution:     sum(i, k) x[i][k] * cost[k][qtype[i]]
        communication: sum(edge i->j, link k->t) x[i][k] * x[j][t] *
                       (latency[k][t] / maxLatency + placementCost[k][t] * bw[i][j] / bw[k][t])

        Terms on a pruned variable are always zero and are left out.
        """
        linear: Dict[Tuple[int, int], float] = {}
        for task in self.variables.tasks:
            for resource in self.variables.resources:
                ik = self.variables.index(task, resource)
                if self.variables.pruned[ik]:
                    continue
                cost = resource.cost_for(task.query_type)
                if cost is None:
                    raise UnsupportedQueryTypeError(
                        f"{resource} has no execution cost for query type '{task.query_type}' of {task}")
                linear[ik] = linear.get(ik, 0.0) + cost

        self.max_latency = self.instance.resources.max_latency()
        cost_model = self.instance.cost

        quadratic: Dict[Tuple[Tuple[int, int], Tuple[int, int]], float] = {}
        for edge in self.instance.tasks.arcs():
            for link in self.instance.resources.arcs():
                ik = self.variables.index(edge.source, link.source)
                jt = self.variables.index(edge.target, link.target)
                if self.variables.pruned[ik] or self.variables.pruned[jt]:
                    continue
                coef = link.data.normalized_latency(self.max_latency)
                coef += (cost_model.placement_cost(link.source.placement, link.target.placement)
                         * edge.data.bandwidth / link.data.bandwidth)
                if coef == 0:
                    continue
                if ik == jt:
                    # x * x == x for a boolean
                    linear[ik] = linear.get(ik, 0.0) + coef
                    continue
                key = (ik, jt) if ik < jt else (jt, ik)
                quadratic[key] = quadratic.get(key, 0.0) + coef

        self.quadratic_objective = [(self.variables.names[a], self.variables.names[b], coef)
                                    for (a, b), coef in quadratic.items()]

        linear_terms = [(self.variables.at(*ik), coef) for ik, coef in linear.items()]
        self.linear_objective = [(self.variables.names[ik], coef) for ik, coef in linear.items()]
        if self.backend.supports_quadratic:
            quadratic_terms = [(self.variables.at(*a), self.variables.at(*b), coef)
                               for (a, b), coef in quadratic.items()]
            self.backend.minimize(linear_terms, quadratic_terms)
        else:
            for (a, b), coef in quadratic.items():
                y = self._linearize_product(a, b)
                linear_terms.append((y, coef))
                self.linear_objective.append((self.auxiliary_variables[-1], coef))
            self.backend.minimize(linear_terms)

        logger.info(f"Objective: {len(linear)} execution terms, {len(quadratic)} communication products "
                    f"(max link latency {self.max_latency:g}, "
                    f"{'native quadratic' if self.backend.supports_quadratic else 'linearized'})")

    def _linearize_product(self, a: Tuple[int, int], b: Tuple[int, int]):
        """
        McCormick linearization of y = x_a * x_b for booleans:
        y <= x_a, y <= x_b, y >= x_a + x_b - 1.
        """
        name_a = self.variables.names[a]
        name_b = self.variables.names[b]
        x_a = self.variables.at(*a)
        x_b = self.variables.at(*b)
        name = f'y({name_a})({name_b})'
        y = self.backend.bool_var(name)
        self.auxiliary_variables.append(name)

        rows = [
            ([(y, 1.0), (x_a, -1.0)], 0.0, f'linearization_first({name})', [(name, 1.0), (name_a, -1.0)]),
            ([(y, 1.0), (x_b, -1.0)], 0.0, f'linearization_second({name})', [(name, 1.0), (name_b, -1.0)]),
            ([(x_a, 1.0), (x_b, 1.0), (y, -1.0)], 1.0, f'linearization_both({name})',
             [(name_a, 1.0), (name_b, 1.0), (name, -1.0)]),
        ]
        for terms, rhs, row_name, named_terms in rows:
            self.backend.add_le(terms, rhs, row_name)
            self.constraints.append(ConstraintRecord(row_name, tuple(named_terms), '<=', rhs))
        return y


def solve_placement(instance: PlacementInstance, config: Optional[SolverConfig] = None) -> PlacementResult:
    """
    Build, solve and decode a placement model, releasing the solver afterwards.

    Parameters:
        instance (PlacementInstance): Tasks, resources and cost model.
        config (SolverConfig, optional): Solver configuration.

    Returns:
        PlacementResult: The complete assignment, or feasible=False. Never a
                         partial assignment.
    """
    with PlacementModel(instance, config) as model:
        model.solve()
        if not model.is_feasible():
            return PlacementResult(feasible=False)
        return PlacementResult(feasible=True, assignment=model.get_assignment(),
                               objective=model.objective_value())


if __name__ == '__main__':
    instance = build_sample_instance()

    print("Task Graph:")
    for arc in instance.tasks.arcs():
        print(f"{arc.source.label} -> {arc.target.label} (bandwidth {arc.data.bandwidth})")

    with PlacementModel(instance) as model:
        model.solve()
        if model.is_feasible():
            solution = model.get_solution()
            print("\nPLACEMENT:")
            print(format_placement(instance, solution))
            print(f"\nObjective: {model.objective_value():.4f}")
            validation = validate_placement(instance, solution)
            if validation["valid"]:
                print("\nPlacement validation: all constraints satisfied")
            else:
                print("\nPlacement validation: violations detected")
                for issue in validation["issues"]:
                    print(issue)
        else:
            print("\nNo feasible placement exists for this instance.")
