"""
QP solver backends.

Every backend solves
    minimize    1/2 x^T P x + q^T x
    subject to  A_ineq x <= b_ineq
                A_eq x == b_eq
                lb <= x <= ub
and returns a QPResult, or raises QPInfeasibleError / QPSolverError.
Backends are picked by name (get_solver), never by probing what is installed.
Matrices stay sparse all the way into the backend.
"""
from dataclasses import dataclass
from importlib.metadata import version

import numpy as np
import scipy.sparse as sp


class QPSolverError(RuntimeError):
    pass


class QPInfeasibleError(QPSolverError):
    pass


@dataclass
class QPResult:
    x: np.ndarray
    cost: float
    status: str


def _objective(P, q, x):
    return float(0.5 * x @ (P @ x) + q @ x)


def primal_residual(x, A_ineq, b_ineq, A_eq, b_eq, lb, ub) -> float:
    """Largest violation of any equality, inequality or bound at x."""
    x = np.asarray(x, float)
    r = 0.0
    if A_eq.shape[0]:
        r = max(r, float(np.max(np.abs(A_eq @ x - b_eq))))
    if A_ineq.shape[0]:
        r = max(r, float(np.max(A_ineq @ x - b_ineq)))
    if x.shape[0]:
        r = max(r, float(np.max(lb - x)), float(np.max(x - ub)))
    return r


class QPSolver:
    name = "base"
    # an inaccurate solve is only accepted below this primal residual
    max_residual = 1e-3

    def solve(self, P, q, A_ineq, b_ineq, A_eq, b_eq, lb, ub) -> QPResult:
        raise NotImplementedError

    def _accept_inaccurate(self, status, x, P, q, A_ineq, b_ineq, A_eq, b_eq, lb, ub) -> QPResult:
        resid = primal_residual(x, A_ineq, b_ineq, A_eq, b_eq, lb, ub)
        if resid > self.max_residual:
            raise QPSolverError(
                f"{self.name}: {status} with primal residual {resid:.3g} > {self.max_residual:.3g}"
            )
        return QPResult(x=x, cost=_objective(P, q, x), status=status)


def _osqp_polish_key():
    # osqp 1.x renamed the setting
    return "polishing" if int(version("osqp").split(".")[0]) >= 1 else "polish"


class OSQPSolver(QPSolver):
    name = "osqp"

    def __init__(self, eps_abs: float = 1e-4, eps_rel: float = 1e-4,
                 max_iter: int = 50000, polish: bool = True,
                 time_limit: float | None = None, max_residual: float = 1e-3,
                 verbose: bool = False):
        self.eps_abs = eps_abs
        self.eps_rel = eps_rel
        self.max_iter = max_iter
        self.polish = polish
        self.time_limit = time_limit
        self.max_residual = max_residual
        self.verbose = verbose

    def settings(self) -> dict:
        settings = {
            "verbose": self.verbose,
            "eps_abs": self.eps_abs,
            "eps_rel": self.eps_rel,
            "max_iter": self.max_iter,
            _osqp_polish_key(): self.polish,
        }
        if self.time_limit is not None:
            settings["time_limit"] = float(self.time_limit)
        return settings

    def solve(self, P, q, A_ineq, b_ineq, A_eq, b_eq, lb, ub) -> QPResult:
        import osqp

        P = sp.csc_matrix(P)
        q = np.asarray(q, float)
        n = P.shape[0]
        m_iq = A_ineq.shape[0]

        # OSQP expects l <= A x <= u
        # equalities: l=u=b_eq, inequalities: l=-inf, bounds: identity rows
        A = sp.vstack([sp.csc_matrix(A_eq), sp.csc_matrix(A_ineq), sp.eye(n, format="csc")], format="csc")
        l = np.concatenate([b_eq, -np.inf * np.ones(m_iq), lb])
        u = np.concatenate([b_eq, b_ineq, ub])

        prob = osqp.OSQP()
        prob.setup(P=sp.triu(P, format="csc"), q=q, A=A, l=l, u=u, **self.settings())
        res = prob.solve()

        status = str(res.info.status)
        if status == "solved":
            x = np.asarray(res.x, float)
            return QPResult(x=x, cost=_objective(P, q, x), status=status)
        if status == "solved inaccurate":
            return self._accept_inaccurate(status, np.asarray(res.x, float), P, q,
                                           A_ineq, b_ineq, A_eq, b_eq, lb, ub)
        if status.startswith("primal infeasible"):
            raise QPInfeasibleError(f"OSQP: problem is infeasible ({status})")
        raise QPSolverError(f"OSQP failed: {status}")


class CvxpySolver(QPSolver):
    name = "cvxpy"

    def __init__(self, solver: str | None = None, max_residual: float = 1e-3,
                 verbose: bool = False, **solver_opts):
        self.solver = solver
        self.max_residual = max_residual
        self.verbose = verbose
        self.solver_opts = solver_opts

    def solve(self, P, q, A_ineq, b_ineq, A_eq, b_eq, lb, ub) -> QPResult:
        import cvxpy as cp

        P = sp.csc_matrix(P)
        q = np.asarray(q, float)
        x = cp.Variable(P.shape[0])

        cons = []
        if A_eq.shape[0]:
            cons.append(cp.Constant(sp.csc_matrix(A_eq)) @ x == b_eq)
        if A_ineq.shape[0]:
            cons.append(cp.Constant(sp.csc_matrix(A_ineq)) @ x <= b_ineq)
        lo = np.isfinite(lb)
        hi = np.isfinite(ub)
        if lo.any():
            cons.append(x[np.where(lo)[0]] >= lb[lo])
        if hi.any():
            cons.append(x[np.where(hi)[0]] <= ub[hi])

        obj = 0.5 * cp.quad_form(x, cp.psd_wrap(P)) + q @ x
        prob = cp.Problem(cp.Minimize(obj), cons)
        prob.solve(solver=self.solver, verbose=self.verbose, **self.solver_opts)

        status = str(prob.status)
        if status == cp.OPTIMAL:
            xv = np.asarray(x.value, float)
            return QPResult(x=xv, cost=_objective(P, q, xv), status=status)
        if status == cp.OPTIMAL_INACCURATE:
            return self._accept_inaccurate(status, np.asarray(x.value, float), P, q,
                                           A_ineq, b_ineq, A_eq, b_eq, lb, ub)
        if status in (cp.INFEASIBLE, cp.INFEASIBLE_INACCURATE):
            raise QPInfeasibleError(f"cvxpy: problem is infeasible ({status})")
        raise QPSolverError(f"cvxpy failed: {status}")


SOLVERS = {
    OSQPSolver.name: OSQPSolver,
    CvxpySolver.name: CvxpySolver,
}


def get_solver(solver="osqp", **kwargs) -> QPSolver:
    """Solver instance from a name in SOLVERS or an existing QPSolver."""
    if isinstance(solver, QPSolver):
        return solver
    try:
        cls = SOLVERS[str(solver).lower()]
    except KeyError:
        raise ValueError(f"unknown QP solver {solver!r}, expected one of {sorted(SOLVERS)}") from None
    return cls(**kwargs)
