from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Sequence, Tuple
import logging

from ortools.linear_solver import pywraplp

logger = logging.getLogger(__name__)

# (variable, coefficient) and (variable, variable, coefficient)
LinearTerms = Sequence[Tuple[Any, float]]
QuadraticTerms = Sequence[Tuple[Any, Any, float]]


####################################
# SECTION: ERRORS
####################################

class PlacementError(Exception):
    """Base class of the placement model errors."""


class SolverBackendError(PlacementError):
    """The solver engine failed, is unavailable or was already released."""


class MissingVariableError(PlacementError, LookupError):
    """A (task, resource) decision variable was looked up before it was created."""


class UnsupportedQueryTypeError(PlacementError, ValueError):
    """A resource that may host a task has no execution cost for its query type."""


class InfeasibleModelError(PlacementError):
    """A solution was requested from a model without a feasible solve."""


####################################
# SECTION: CONFIGURATION
####################################

@dataclass
class SolverConfig:
    """One-time solver configuration, applied when the backend is created."""
    backend: str = 'ortools'  # 'ortools' or 'gurobi'
    engine: str = 'SCIP'  # OR-Tools engine id ('SCIP' or 'CBC')
    time_limit_seconds: Optional[float] = None
    num_threads: Optional[int] = None
    verbose: bool = False  # Solver log output
    export_path: Optional[str] = None  # Write the LP file after building
    assignment_threshold: float = 0.5  # Value from which a variable counts as true

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'SolverConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown solver config keys: {sorted(unknown)}")
        return cls(**values)


####################################
# SECTION: SOLVER BOUNDARY
####################################

class SolverBackend:
    """
    Operations the placement model needs from an integer-programming engine.

    A backend owns exactly one engine context. It is acquired in the
    constructor and released by end(), which must be called once.
    """

    name = 'abstract'
    supports_quadratic = False

    def bool_var(self, name: str) -> Any:
        raise NotImplementedError

    def add_le(self, terms: LinearTerms, rhs: float, name: str) -> None:
        raise NotImplementedError

    def add_eq(self, terms: LinearTerms, rhs: float, name: str) -> None:
        raise NotImplementedError

    def fix_to_zero(self, var: Any) -> None:
        raise NotImplementedError

    def minimize(self, linear: LinearTerms, quadratic: QuadraticTerms = ()) -> None:
        raise NotImplementedError

    def solve(self) -> None:
        raise NotImplementedError

    def is_feasible(self) -> bool:
        raise NotImplementedError

    def value(self, var: Any) -> float:
        raise NotImplementedError

    def objective_value(self) -> float:
        raise NotImplementedError

    def export(self, path: str) -> None:
        raise NotImplementedError

    def end(self) -> None:
        raise NotImplementedError


class OrToolsBackend(SolverBackend):
    """
    Linear MIP backend on top of OR-Tools' pywraplp wrapper.

    Only linear expressions are accepted; the model linearizes products of
    binary variables before handing the objective over.
    """

    name = 'ortools'
    supports_quadratic = False

    def __init__(self, config: SolverConfig):
        self.solver = pywraplp.Solver.CreateSolver(config.engine)
        if self.solver is None:
            raise SolverBackendError(f"OR-Tools engine '{config.engine}' is not available")
        if config.time_limit_seconds is not None:
            self.solver.SetTimeLimit(int(config.time_limit_seconds * 1000))  # ms
        if config.num_threads is not None:
            self.solver.SetNumThreads(config.num_threads)
        if config.verbose:
            self.solver.EnableOutput()
        else:
            self.solver.SuppressOutput()
        self.status = None

    def _require(self):
        if self.solver is None:
            raise SolverBackendError("OR-Tools solver was already released")
        return self.solver

    def bool_var(self, name):
        return self._require().BoolVar(name)

    def _add_row(self, lb, ub, terms, name):
        solver = self._require()
        constraint = solver.Constraint(lb, ub, name)
        for var, coef in terms:
            constraint.SetCoefficient(var, constraint.GetCoefficient(var) + coef)

    def add_le(self, terms, rhs, name):
        self._add_row(-self._require().infinity(), rhs, terms, name)

    def add_eq(self, terms, rhs, name):
        self._add_row(rhs, rhs, terms, name)

    def fix_to_zero(self, var):
        var.SetBounds(0, 0)

    def minimize(self, linear, quadratic=()):
        if quadratic:
            raise SolverBackendError("OR-Tools linear solver cannot take quadratic objective terms")
        objective = self._require().Objective()
        for var, coef in linear:
            objective.SetCoefficient(var, objective.GetCoefficient(var) + coef)
        objective.SetMinimization()

    def solve(self):
        solver = self._require()
        self.status = solver.Solve()
        if self.status in (pywraplp.Solver.ABNORMAL, pywraplp.Solver.MODEL_INVALID):
            raise SolverBackendError(f"OR-Tools solve failed with status {self.status}")

    def is_feasible(self):
        return self.status in (pywraplp.Solver.OPTIMAL, pywraplp.Solver.FEASIBLE)

    def value(self, var):
        return var.solution_value()

    def objective_value(self):
        return self._require().Objective().Value()

    def export(self, path):
        text = self._require().ExportModelAsLpFormat(False)
        with open(path, 'w') as handle:
            handle.write(text)

    def end(self):
        solver = self._require()
        solver.Clear()
        self.solver = None


class GurobiBackend(SolverBackend):
    """
    Backend with native quadratic binary terms, through gurobipy.

    gurobipy is an optional dependency and is only imported when this backend
    is selected.
    """

    name = 'gurobi'
    supports_quadratic = True

    def __init__(self, config: SolverConfig):
        import gurobipy as gp
        from gurobipy import GRB
        self.gp = gp
        self.GRB = GRB
        self.env = None
        self.model = None
        try:
            self.env = gp.Env(empty=True)
            self.env.setParam('OutputFlag', 1 if config.verbose else 0)
            self.env.start()
            self.model = gp.Model('placement', env=self.env)
            if config.time_limit_seconds is not None:
                self.model.setParam('TimeLimit', config.time_limit_seconds)
            if config.num_threads is not None:
                self.model.setParam('Threads', config.num_threads)
        except gp.GurobiError as e:
            if self.model is not None:
                self.model.dispose()
                self.model = None
            if self.env is not None:
                self.env.dispose()
            raise SolverBackendError(f"Gurobi could not start: {e}") from e

    def _require(self):
        if self.model is None:
            raise SolverBackendError("Gurobi model was already released")
        return self.model

    def bool_var(self, name):
        return self._require().addVar(vtype=self.GRB.BINARY, name=name)

    def _linear(self, terms):
        return self.gp.LinExpr([coef for _, coef in terms], [var for var, _ in terms])

    def add_le(self, terms, rhs, name):
        self._require().addConstr(self._linear(terms) <= rhs, name=name)

    def add_eq(self, terms, rhs, name):
        self._require().addConstr(self._linear(terms) == rhs, name=name)

    def fix_to_zero(self, var):
        var.LB = 0
        var.UB = 0

    def minimize(self, linear, quadratic=()):
        expr = self.gp.QuadExpr()
        expr.add(self._linear(linear))
        if quadratic:
            expr.addTerms([coef for _, _, coef in quadratic],
                          [v1 for v1, _, _ in quadratic],
                          [v2 for _, v2, _ in quadratic])
        self._require().setObjective(expr, self.GRB.MINIMIZE)

    def solve(self):
        try:
            self._require().optimize()
        except self.gp.GurobiError as e:
            raise SolverBackendError(f"Gurobi solve failed: {e}") from e

    def is_feasible(self):
        return self._require().SolCount > 0

    def value(self, var):
        return var.X

    def objective_value(self):
        return self._require().ObjVal

    def export(self, path):
        model = self._require()
        model.update()
        model.write(path)

    def end(self):
        model = self._require()
        self.model = None
        try:
            model.dispose()
            self.env.dispose()
        except self.gp.GurobiError as e:
            raise SolverBackendError(f"Gurobi could not release its model: {e}") from e


BACKENDS = {
    OrToolsBackend.name: OrToolsBackend,
    GurobiBackend.name: GurobiBackend,
}


def create_backend(config: SolverConfig) -> SolverBackend:
    """Acquire a fresh solver context for the configured backend."""
    try:
        backend_cls = BACKENDS[config.backend]
    except KeyError:
        raise ValueError(f"Unknown solver backend '{config.backend}'. Choose one of {sorted(BACKENDS)}.") from None
    logger.debug(f"Creating {config.backend} solver backend")
    return backend_cls(config)
