# test_traj_qp_corridor.py
import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
import scipy.sparse as sp
from numpy.polynomial import legendre, polynomial as P
from scipy.io import loadmat

from bern_basis import BernsteinBasis, polyder
from corridor_geom import CorridorInfeasibleError, box_halfspaces, process_corridors
from piecewise_poly import export_pp_to_matlab
from qp_solvers import OSQPSolver, QPInfeasibleError, QPSolverError, get_solver, primal_residual
from traj_qp_corridor import (
    COST_WEIGHTS,
    _check_equality_consistency,
    assemble_qp,
    build_boundary_eq,
    build_corridor_ineq,
    build_cost_matrix,
    check_traj_in_corridor,
    corridor_trajectory_optimize,
    dim_collect_perm,
    int_sqr_deriv_matrix,
    reconstruct_pp,
    var_index,
    visualize_corridor_and_trajectory,
)

STRAIGHT_PATH = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
BEND_PATH = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [2.0, 1.0]])
LB = np.array([-1.0, -1.0])
UB = np.array([3.0, 2.0])


def _segment_boxes(path, margin):
    """Axis aligned box around every step segment."""
    return [
        box_halfspaces(np.minimum(p0, p1) - margin, np.maximum(p0, p1) + margin)
        for p0, p1 in zip(path[:-1], path[1:])
    ]


def _optimize(path, robot_facets=None, deg=5, cont=2, radius=0.1, **kwargs):
    steps = path.shape[0] - 1
    if robot_facets is None:
        robot_facets = [None] * steps
    return corridor_trajectory_optimize(
        robot_facets, [None] * steps, LB, UB, path,
        deg=deg, cont=cont, timescale=1.0,
        ellipsoid=[radius, radius], obs_ellipsoid=[radius, radius],
        **kwargs,
    )


def _weighted_integral(pp, weights, n_nodes=16):
    nodes, w = legendre.leggauss(n_nodes)
    total = 0.0
    for k in range(pp.num_pieces):
        T = pp.breaks[k + 1] - pp.breaks[k]
        tau = 0.5 * T * (nodes + 1.0)
        for r, wr in weights.items():
            vals = pp.piece_eval(k, tau, deriv=r)
            total += wr * 0.5 * T * float(np.sum(w[:, None] * vals**2))
    return total


# ---------- layout ----------

def test_var_index_is_a_bijection():
    dim, order, steps = 3, 4, 2
    idx = [
        int(var_index(s, j, i, dim, order))
        for s in range(steps) for j in range(order) for i in range(dim)
    ]
    assert sorted(idx) == list(range(dim * order * steps))
    # control points of one piece are interleaved by dimension
    assert int(var_index(0, 1, 0, dim, order)) == 3
    assert int(var_index(1, 0, 2, dim, order)) == 14


def test_dim_collect_perm_groups_by_dimension():
    dim, order = 2, 3
    perm = dim_collect_perm(dim, order)
    piece = np.array([10, 20, 11, 21, 12, 22])
    np.testing.assert_array_equal(piece[perm], [10, 11, 12, 20, 21, 22])
    assert sorted(perm.tolist()) == list(range(dim * order))


# ---------- cost ----------

@pytest.mark.parametrize("r", [0, 1, 2, 4])
def test_int_sqr_deriv_matrix_matches_quadrature(r):
    rng = np.random.default_rng(r)
    deg, T = 6, 1.4
    a = rng.normal(size=deg + 1)
    Q = int_sqr_deriv_matrix(deg, r, T)
    np.testing.assert_allclose(Q, Q.T)

    c = a
    for _ in range(r):
        c = polyder(c)
    nodes, w = legendre.leggauss(10)
    t = 0.5 * T * (nodes + 1.0)
    expected = 0.5 * T * np.sum(w * P.polyval(t, c) ** 2)
    assert a @ Q @ a == pytest.approx(expected, rel=1e-10)


def test_int_sqr_deriv_matrix_beyond_degree_is_zero():
    np.testing.assert_array_equal(int_sqr_deriv_matrix(3, 4, 1.0), 0.0)


def test_cost_matrix_is_the_weighted_derivative_integral():
    rng = np.random.default_rng(7)
    deg, cont, T, dim, steps = 5, 2, 1.2, 2, 3
    basis = BernsteinBasis.build(deg, cont, T)
    M = build_cost_matrix(basis, dim, steps)
    n = dim * basis.order * steps
    assert M.shape == (n, n)

    Md = M.toarray()
    np.testing.assert_allclose(Md, Md.T, atol=1e-12)
    assert np.min(np.linalg.eigvalsh(Md)) > -1e-9 * np.max(np.abs(Md))

    x = rng.normal(size=n)
    pp = reconstruct_pp(x, basis, dim, steps)
    weights = {r: w for r, w in COST_WEIGHTS.items() if w != 0.0}
    assert x @ Md @ x == pytest.approx(_weighted_integral(pp, weights), rel=1e-8)


def test_cost_matrix_custom_weights():
    basis = BernsteinBasis.build(4, 2, 1.0)
    M = build_cost_matrix(basis, 1, 1, weights={1: 1.0})
    # a straight line with unit speed over one second
    ctrl = np.linspace(0.0, 1.0, basis.order)
    assert ctrl @ M.toarray() @ ctrl == pytest.approx(1.0)


# ---------- constraints ----------

def test_boundary_row_count():
    deg, cont, dim, steps = 5, 2, 2, 3
    basis = BernsteinBasis.build(deg, cont, 1.0)
    A_eq, b_eq = build_boundary_eq(basis, [0.0, 0.0], [1.0, 2.0], steps, dim)
    # start + goal with cont derivs each, cont+1 rows per junction, per dim
    assert A_eq.shape == (dim * (2 * (cont + 1) + (steps - 1) * (cont + 1)), dim * (deg + 1) * steps)
    assert b_eq.shape == (A_eq.shape[0],)
    # only the goal position rows carry a nonzero right hand side
    assert sorted(b_eq[b_eq != 0.0].tolist()) == [1.0, 2.0]


def test_ends_zeroderivs_is_capped():
    basis = BernsteinBasis.build(9, 5, 1.0)
    A_eq, _ = build_boundary_eq(basis, [0.0], [1.0], 1, 1)
    assert A_eq.shape[0] == 2 * 4
    A_eq, _ = build_boundary_eq(basis, [0.0], [1.0], 1, 1, ends_zeroderivs=0)
    assert A_eq.shape[0] == 2


def test_corridor_rows_cover_every_control_point():
    dim, order = 2, 4
    A0, b0 = box_halfspaces([0.0, 0.0], [1.0, 1.0])
    A1 = np.array([[1.0, 1.0]])
    b1 = np.array([3.0])
    A_in, b_in = build_corridor_ineq([(A0, b0), (A1, b1)], dim, order)
    assert A_in.shape == ((4 + 1) * order, dim * order * 2)
    assert b_in.shape == (A_in.shape[0],)

    x = np.zeros(A_in.shape[1])
    x[var_index(1, 2, 1, dim, order)] = 5.0
    viol = A_in @ x - b_in
    assert np.sum(viol > 0.0) == 1


def test_assemble_qp_tiles_bounds():
    basis = BernsteinBasis.build(3, 1, 1.0)
    qp = assemble_qp([(np.zeros((0, 2)), np.zeros(0))] * 2, basis, [-1.0, -2.0], [1.0, 2.0],
                     [0.0, 0.0], [0.5, 0.5], 2)
    assert qp["A_ineq"].shape[0] == 0
    np.testing.assert_array_equal(qp["lb"][:4], [-1.0, -2.0, -1.0, -2.0])
    assert qp["ub"].shape == (2 * 4 * 2,)


# ---------- end to end ----------

def test_straight_line_meets_boundary_conditions():
    pp, cost = _optimize(STRAIGHT_PATH)
    assert pp.num_pieces == 2 and pp.dim == 2 and pp.order == 6
    assert cost > 0.0

    np.testing.assert_allclose(pp(0.0), [0.0, 0.0], atol=1e-4)
    np.testing.assert_allclose(pp(2.0), [2.0, 0.0], atol=1e-4)
    for d in (1, 2):
        np.testing.assert_allclose(pp(0.0, deriv=d), 0.0, atol=1e-4)
        np.testing.assert_allclose(pp(2.0, deriv=d), 0.0, atol=1e-4)
    for d in range(3):
        np.testing.assert_allclose(pp.piece_eval(0, 1.0, d), pp.piece_eval(1, 0.0, d), atol=1e-4)

    # symmetric problem: no lateral motion, halfway at the junction
    _, pts, _ = pp.sample(dt=0.05)
    np.testing.assert_allclose(pts[:, 1], 0.0, atol=1e-4)
    assert pp(1.0)[0] == pytest.approx(1.0, abs=1e-3)


def test_cost_equals_weighted_integral_of_solution():
    pp, cost = _optimize(STRAIGHT_PATH)
    weights = {r: w for r, w in COST_WEIGHTS.items() if w != 0.0}
    assert cost == pytest.approx(_weighted_integral(pp, weights), rel=1e-5)


def test_low_degree_is_reported_infeasible():
    # a cubic cannot meet pos/vel/acc at both ends plus C2 junctions
    with pytest.raises(QPInfeasibleError):
        _optimize(STRAIGHT_PATH, deg=3, cont=2)


@pytest.mark.parametrize("solver", ["osqp", "cvxpy"])
def test_backend_reports_infeasible_corridor(solver):
    # x >= 0.3 holds at the step midpoint but not at the start waypoint
    facets = [(np.array([[-1.0, 0.0]]), np.array([-0.3])), None]
    with pytest.raises(QPInfeasibleError):
        _optimize(STRAIGHT_PATH, robot_facets=facets, solver=solver)


def test_equality_check_stays_sparse_on_long_paths():
    steps, dim = 250, 3
    basis = BernsteinBasis.build(7, 3, 1.0)
    A_eq, b_eq = build_boundary_eq(basis, np.zeros(dim), np.full(dim, 5.0), steps, dim)
    assert A_eq.shape == (dim * (8 + (steps - 1) * 4), dim * 8 * steps)
    _check_equality_consistency(A_eq, b_eq)

    low = BernsteinBasis.build(3, 2, 1.0)
    A_eq, b_eq = build_boundary_eq(low, [0.0], [2.0], 2, 1)
    with pytest.raises(QPInfeasibleError):
        _check_equality_consistency(A_eq, b_eq)


def test_many_steps_solve_with_default_solver():
    steps = 120
    path = np.zeros((steps + 1, 3))
    path[:, 0] = np.arange(steps + 1, dtype=float)
    pp, cost = corridor_trajectory_optimize(
        [None] * steps, [None] * steps, [-1.0, -5.0, -5.0], [steps + 1.0, 5.0, 5.0], path,
        deg=7, cont=3, timescale=1.0, ellipsoid=[0.1] * 3, obs_ellipsoid=[0.1] * 3,
    )
    assert pp.num_pieces == steps and cost > 0.0
    np.testing.assert_allclose(pp(0.0), path[0], atol=1e-3)
    np.testing.assert_allclose(pp(float(steps)), path[-1], atol=1e-3)


def test_osqp_settings_use_installed_polish_name(recwarn):
    _optimize(STRAIGHT_PATH, solver="osqp")
    assert not [w for w in recwarn if "polish" in str(w.message)]
    settings = OSQPSolver().settings()
    assert sum(k in settings for k in ("polish", "polishing")) == 1


def test_inaccurate_result_is_checked_against_residual():
    solver = OSQPSolver(max_residual=1e-3)
    P = sp.identity(2, format="csc")
    q = np.zeros(2)
    A_eq = sp.csc_matrix(np.array([[1.0, 1.0]]))
    b_eq = np.array([1.0])
    A_ineq = sp.csc_matrix((0, 2))
    b_ineq = np.zeros(0)
    lb = np.full(2, -np.inf)
    ub = np.full(2, np.inf)

    good = np.array([0.5, 0.5 + 1e-5])
    res = solver._accept_inaccurate("solved inaccurate", good, P, q, A_ineq, b_ineq, A_eq, b_eq, lb, ub)
    assert res.status == "solved inaccurate"
    assert primal_residual(good, A_ineq, b_ineq, A_eq, b_eq, lb, ub) == pytest.approx(1e-5)

    bad = np.array([0.5, 0.6])
    with pytest.raises(QPSolverError):
        solver._accept_inaccurate("solved inaccurate", bad, P, q, A_ineq, b_ineq, A_eq, b_eq, lb, ub)


def test_bend_stays_inside_corridors():
    radius = 0.1
    facets = _segment_boxes(BEND_PATH, 0.3)
    pp, _ = _optimize(BEND_PATH, robot_facets=facets, radius=radius)

    max_v, bad, total, _ = check_traj_in_corridor(pp, facets, samples_per_piece=100)
    assert total == 300 and bad == 0
    assert max_v <= -radius + 1e-4

    eroded = process_corridors(facets, [None] * 3, BEND_PATH, [radius, radius], [radius, radius])
    max_v, bad, _, rate = check_traj_in_corridor(pp, eroded, samples_per_piece=100)
    assert bad == 0 and rate == 0.0


def test_nan_padding_does_not_change_the_solution():
    facets = _segment_boxes(BEND_PATH, 0.3)
    padded = [
        (np.vstack([A, np.full((2, 2), np.nan)]), np.concatenate([b, [np.nan, np.nan]]))
        for A, b in facets
    ]
    pp_a, cost_a = _optimize(BEND_PATH, robot_facets=facets)
    pp_b, cost_b = _optimize(BEND_PATH, robot_facets=padded)
    assert cost_a == pytest.approx(cost_b, rel=1e-6)
    np.testing.assert_allclose(pp_a.coefs, pp_b.coefs, atol=1e-5)


def test_osqp_and_cvxpy_agree():
    facets = _segment_boxes(BEND_PATH, 0.3)
    _, cost_osqp = _optimize(BEND_PATH, robot_facets=facets, solver="osqp")
    _, cost_cvx = _optimize(BEND_PATH, robot_facets=facets, solver="cvxpy")
    assert cost_cvx == pytest.approx(cost_osqp, rel=1e-3)


def test_solver_instance_is_accepted():
    solver = get_solver("osqp", eps_abs=1e-8, eps_rel=1e-8)
    pp, _ = _optimize(STRAIGHT_PATH, solver=solver)
    np.testing.assert_allclose(pp(2.0), [2.0, 0.0], atol=1e-5)


def test_corridor_too_narrow_for_the_robot():
    facets = _segment_boxes(STRAIGHT_PATH, 0.05)
    with pytest.raises(CorridorInfeasibleError) as exc:
        _optimize(STRAIGHT_PATH, robot_facets=facets, radius=0.1)
    assert exc.value.step == 0


def test_verbose_logging(capsys):
    _optimize(STRAIGHT_PATH, robot_facets=_segment_boxes(STRAIGHT_PATH, 0.3), verbose=True)
    out = capsys.readouterr().out
    assert "[corridor][noredund] step=0" in out
    assert "[qp][setup]" in out
    assert "[qp][solve] status=solved" in out


@pytest.mark.parametrize("kwargs", [
    dict(path=np.zeros((1, 2))),
    dict(path=np.array([[0.0, 0.0], [np.nan, 1.0]])),
    dict(lb=[0.0]),
    dict(lb=[5.0, 5.0]),
    dict(ellipsoid=[-0.1, 0.1]),
    dict(ellipsoid=[np.nan, 0.1]),
    dict(obs_ellipsoid=[0.1, np.inf]),
    dict(lb=[np.nan, -1.0]),
    dict(ub=[3.0, np.nan]),
    dict(deg=-1),
    dict(cont=1.5),
    dict(timescale=0.0),
    dict(robot_facets=[None]),
    dict(robot_facets=[(np.ones((2, 3)), np.ones(2)), None]),
    dict(solver="gurobi-free"),
    dict(ends_zeroderivs=-1),
])
def test_invalid_inputs_raise_value_error(kwargs):
    args = dict(
        robot_facets=[None, None], obs_facets=[None, None], lb=LB, ub=UB, path=STRAIGHT_PATH,
        deg=5, cont=2, timescale=1.0, ellipsoid=[0.1, 0.1], obs_ellipsoid=[0.1, 0.1],
    )
    args.update(kwargs)
    with pytest.raises(ValueError):
        corridor_trajectory_optimize(**args)


def test_check_traj_needs_one_corridor_per_piece():
    pp, _ = _optimize(STRAIGHT_PATH)
    with pytest.raises(ValueError):
        check_traj_in_corridor(pp, [box_halfspaces(LB, UB)])
    max_v, bad, total, rate = check_traj_in_corridor(pp, [(None, None), (None, None)])
    assert (max_v, bad, total, rate) == (0.0, 0, 0, 0.0)


# ---------- outputs ----------

def test_visualize_writes_png(tmp_path):
    facets = _segment_boxes(BEND_PATH, 0.3)
    pp, _ = _optimize(BEND_PATH, robot_facets=facets)
    eroded = process_corridors(facets, [None] * 3, BEND_PATH, [0.1, 0.1], [0.1, 0.1])
    out = tmp_path / "traj.png"
    visualize_corridor_and_trajectory(pp, eroded, BEND_PATH, LB, UB, raw_corridors=facets, out_path=str(out))
    assert out.exists() and out.stat().st_size > 0


def test_export_pp_to_matlab(tmp_path):
    pp, cost = _optimize(STRAIGHT_PATH)
    out = tmp_path / "traj.mat"
    export_pp_to_matlab(str(out), pp, cost, path=STRAIGHT_PATH)

    data = loadmat(str(out), simplify_cells=True)
    assert data["cost"] == pytest.approx(cost)
    np.testing.assert_allclose(data["path"], STRAIGHT_PATH.T)
    exported = data["pp"]
    assert exported["form"] == "pp"
    assert exported["order"] == pp.order
    np.testing.assert_allclose(exported["breaks"], pp.breaks)
    # first row: piece 0, x dimension, highest power first
    np.testing.assert_allclose(exported["coefs"][0], pp.coefs[0, 0, ::-1])
