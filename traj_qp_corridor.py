import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import lsqr

from bern_basis import BernsteinBasis
from corridor_geom import as_facets, halfspace_to_polygon, halfspace_violation, process_corridors
from piecewise_poly import PiecewisePoly
from qp_solvers import QPInfeasibleError, get_solver

# weights of \int (d^r p / dt^r)^2 dt in the objective, keyed by r
COST_WEIGHTS = {2: 1.0, 3: 0.0, 4: 5e-3}

# endpoint rest conditions are never imposed beyond this derivative order
MAX_ENDS_ZERODERIVS = 3


# -----------------------------
# decision vector layout
# -----------------------------
#
# Per piece the control points are interleaved by dimension:
#   [x0 y0 z0 | x1 y1 z1 | ... ]   (one group per control point)
# and pieces follow each other. Halfspace rows act on one control point
# across all dims, boundary/continuity rows act on one dim across all
# control points; both go through var_index.

def var_index(step, ctrl, d, dim: int, order: int):
    """Index of control point `ctrl`, dimension `d` of piece `step`."""
    return step * order * dim + np.asarray(ctrl) * dim + np.asarray(d)


def dim_collect_perm(dim: int, order: int) -> np.ndarray:
    """
    Index map from grouped-by-dimension layout [xxx yyy zzz] to the
    interleaved layout of one piece: x_grouped = x_piece[perm].
    """
    ctrl = np.arange(order)[None, :]
    d = np.arange(dim)[:, None]
    return (ctrl * dim + d).reshape(-1)


def _coo_to_csc(rows, cols, data, shape):
    if len(data) == 0:
        return sp.csc_matrix(shape, dtype=float)
    return sp.csc_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=shape,
    )


# -----------------------------
# constraints
# -----------------------------

def build_corridor_ineq(corridors, dim: int, order: int):
    """
    Every control point of piece s must satisfy corridor s.
    By the convex hull property of the Bernstein basis this keeps the whole
    piece inside the corridor.
    Returns (A_ineq csc, b_ineq).
    """
    steps = len(corridors)
    nvars = dim * order * steps
    rows, cols, data, b_all = [], [], [], []
    r0 = 0
    for s, (A, b) in enumerate(corridors):
        m = b.shape[0]
        if m == 0:
            continue
        row_ids = np.repeat(np.arange(m), dim)
        for j in range(order):
            rows.append(r0 + j * m + row_ids)
            cols.append(np.tile(var_index(s, j, np.arange(dim), dim, order), m))
            data.append(A.reshape(-1))
        b_all.append(np.tile(b, order))
        r0 += order * m

    b_ineq = np.concatenate(b_all) if b_all else np.zeros((0,), dtype=float)
    return _coo_to_csc(rows, cols, data, (r0, nvars)), b_ineq


def build_boundary_eq(basis: BernsteinBasis, init, goal, steps: int, dim: int,
                      ends_zeroderivs: int | None = None):
    """
    Equality rows:
      piece 0 at t=0:         pos = init, derivs 1..ends_zeroderivs = 0
      piece k / k+1 junction: derivs 0..cont continuous
      last piece at t=T:      pos = goal, derivs 1..ends_zeroderivs = 0
    Returns (A_eq csc, b_eq).
    """
    order = basis.order
    cont = basis.cont
    if ends_zeroderivs is None:
        ends_zeroderivs = min(MAX_ENDS_ZERODERIVS, cont)
    nvars = dim * order * steps
    ctrl = np.arange(order)

    Aeq_rows = []
    beq = []

    def add_eq_row(row_dict, rhs):
        Aeq_rows.append(row_dict)
        beq.append(float(rhs))

    def add_endpoint(step, at_end, d, target):
        row = basis.endpoint_rows(d)[1 if at_end else 0]
        for i in range(dim):
            cols = var_index(step, ctrl, i, dim, order)
            add_eq_row(dict(zip(cols.tolist(), row)), target[i] if d == 0 else 0.0)

    for step in range(steps):
        if step == 0:
            # initial position and zero derivatives
            for d in range(ends_zeroderivs + 1):
                add_endpoint(0, False, d, init)
        else:
            # continuity with previous piece
            for d in range(cont + 1):
                # start of this piece minus end of the previous one
                row0, row1 = basis.endpoint_rows(d)
                for i in range(dim):
                    row = {}
                    for c, v in zip(var_index(step, ctrl, i, dim, order).tolist(), row0):
                        row[c] = row.get(c, 0.0) + v
                    for c, v in zip(var_index(step - 1, ctrl, i, dim, order).tolist(), row1):
                        row[c] = row.get(c, 0.0) - v
                    add_eq_row(row, 0.0)

        if step == steps - 1:
            # goal position and zero derivatives
            for d in range(ends_zeroderivs + 1):
                add_endpoint(step, True, d, goal)

    # Build sparse Aeq
    data = []
    rows = []
    cols = []
    for r, rowdict in enumerate(Aeq_rows):
        for c, v in rowdict.items():
            if v == 0.0:
                continue
            rows.append(r)
            cols.append(c)
            data.append(v)
    Aeq = sp.csc_matrix((data, (rows, cols)), shape=(len(beq), nvars))
    return Aeq, np.asarray(beq, dtype=float)


# -----------------------------
# cost
# -----------------------------

def int_sqr_deriv_matrix(deg: int, r: int, T: float) -> np.ndarray:
    """
    Q such that integral_0^T (p^(r)(t))^2 dt = a^T Q a,
    where p(t) = sum_i a_i t^i.
    """
    n = deg + 1
    Q = np.zeros((n, n), dtype=float)
    for i in range(r, n):
        ci = 1.0
        for k in range(r):
            ci *= (i - k)
        for j in range(r, n):
            cj = 1.0
            for k in range(r):
                cj *= (j - k)
            p = i + j - 2 * r  # power of t in product
            Q[i, j] = ci * cj * (T ** (p + 1)) / (p + 1)
    return Q


def build_cost_matrix(basis: BernsteinBasis, dim: int, steps: int, weights=None):
    """
    Block diagonal cost over the decision vector, one identical block per
    piece and dimension; x^T M x is the weighted sum of squared derivative
    integrals of the trajectory.
    """
    if weights is None:
        weights = COST_WEIGHTS
    order = basis.order
    coef_cost = np.zeros((order, order), dtype=float)
    for r, w in weights.items():
        if w == 0.0:
            continue
        coef_cost += w * int_sqr_deriv_matrix(basis.deg, r, basis.timescale)

    # coefs = bern^T ctrl  =>  ctrl^T (bern Qc bern^T) ctrl
    piece_cost = basis.bern @ coef_cost @ basis.bern.T

    nvars = dim * order * steps
    rows, cols, data = [], [], []
    ctrl = np.arange(order)
    for s in range(steps):
        for i in range(dim):
            idx = var_index(s, ctrl, i, dim, order)
            rr, cc = np.meshgrid(idx, idx, indexing="ij")
            rows.append(rr.reshape(-1))
            cols.append(cc.reshape(-1))
            data.append(piece_cost.reshape(-1))
    M = _coo_to_csc(rows, cols, data, (nvars, nvars))
    # rounding only; the blocks are symmetric already
    return ((M + M.T) * 0.5).tocsc()


# -----------------------------
# reconstruction
# -----------------------------

def reconstruct_pp(x, basis: BernsteinBasis, dim: int, steps: int) -> PiecewisePoly:
    """Decision vector -> piecewise polynomial (monomial coefs per piece)."""
    order = basis.order
    x = np.asarray(x, float).reshape(steps, dim * order)
    perm = dim_collect_perm(dim, order)
    coefs = np.zeros((steps, dim, order), dtype=float)
    for piece in range(steps):
        ctrl = x[piece][perm].reshape(dim, order).T   # (order, dim)
        coefs[piece] = basis.ctrl_to_coefs(ctrl).T
    breaks = basis.timescale * np.arange(steps + 1, dtype=float)
    return PiecewisePoly(breaks, coefs)


# -----------------------------
# main entry
# -----------------------------

def _validate_inputs(robot_facets, obs_facets, lb, ub, path, deg, cont, timescale,
                     ellipsoid, obs_ellipsoid):
    path = np.asarray(path, float)
    if path.ndim != 2 or path.shape[0] < 2:
        raise ValueError(f"path must be (steps+1, dim) with at least 2 waypoints, got shape {path.shape}")
    steps, dim = path.shape[0] - 1, path.shape[1]
    if not np.isfinite(path).all():
        raise ValueError("path contains non-finite waypoints")

    for name, facets in (("robot", robot_facets), ("obstacle", obs_facets)):
        if len(facets) != steps:
            raise ValueError(f"{name} facets: need one entry per step ({steps}), got {len(facets)}")
        for s, f in enumerate(facets):
            if f is None:
                continue
            try:
                as_facets(f[0], f[1], dim)
            except ValueError as e:
                raise ValueError(f"{name} facets at step {s}: {e}") from None

    vecs = {}
    for name, v in (("lb", lb), ("ub", ub), ("ellipsoid", ellipsoid), ("obs_ellipsoid", obs_ellipsoid)):
        v = np.asarray(v, float).reshape(-1)
        if v.shape[0] != dim:
            raise ValueError(f"{name} must have {dim} entries, got {v.shape[0]}")
        # NaN erosion would look like padding and silently drop the corridor
        if not np.isfinite(v).all():
            raise ValueError(f"{name} must be finite, got {v}")
        vecs[name] = v
    if np.any(vecs["lb"] > vecs["ub"]):
        raise ValueError("lb must not exceed ub")
    if np.any(vecs["ellipsoid"] < 0.0) or np.any(vecs["obs_ellipsoid"] < 0.0):
        raise ValueError("ellipsoid radii must be non-negative")

    if int(deg) != deg or deg < 0:
        raise ValueError(f"deg must be a non-negative integer, got {deg}")
    if int(cont) != cont or cont < 0:
        raise ValueError(f"cont must be a non-negative integer, got {cont}")
    if not timescale > 0.0:
        raise ValueError(f"timescale must be positive, got {timescale}")

    return path, steps, dim, vecs


def _check_equality_consistency(A_eq, b_eq, tol: float = 1e-7):
    """Inconsistent equalities (e.g. degree too low for the boundary
    conditions) are reported here rather than left to the QP backend.
    Only a converged least-squares answer with a large residual counts;
    if lsqr stops early the QP backend decides."""
    if A_eq.shape[0] == 0:
        return
    # unit rows, the derivative rows scale with deg/T
    norms = np.sqrt(np.asarray(A_eq.multiply(A_eq).sum(axis=1)).reshape(-1))
    norms[norms == 0.0] = 1.0
    D = sp.diags(1.0 / norms)
    A_s = (D @ A_eq).tocsr()
    b_s = b_eq / norms

    out = lsqr(A_s, b_s, atol=1e-10, btol=1e-10, iter_lim=10 * A_s.shape[1])
    x, istop = out[0], out[1]
    if istop not in (2, 5):
        return
    resid = float(np.max(np.abs(A_s @ x - b_s)))
    if resid > tol * max(1.0, float(np.max(np.abs(b_s)))):
        raise QPInfeasibleError(
            f"equality constraints are inconsistent (least-squares residual={resid:.3g}); "
            "the polynomial degree is too low for the boundary and continuity conditions"
        )


def assemble_qp(corridors, basis: BernsteinBasis, lb, ub, init, goal, dim: int,
                ends_zeroderivs=None, cost_weights=None):
    """All QP matrices for given processed corridors. Returns a dict."""
    steps = len(corridors)
    order = basis.order
    A_ineq, b_ineq = build_corridor_ineq(corridors, dim, order)
    A_eq, b_eq = build_boundary_eq(basis, init, goal, steps, dim, ends_zeroderivs)
    M = build_cost_matrix(basis, dim, steps, weights=cost_weights)

    # interleaved layout => the per-dim bounds just repeat
    return {
        "M": M,
        "A_ineq": A_ineq,
        "b_ineq": b_ineq,
        "A_eq": A_eq,
        "b_eq": b_eq,
        "lb": np.tile(np.asarray(lb, float), steps * order),
        "ub": np.tile(np.asarray(ub, float), steps * order),
    }


def corridor_trajectory_optimize(
    robot_facets,
    obs_facets,
    lb,
    ub,
    path,
    deg: int,
    cont: int,
    timescale: float,
    ellipsoid,
    obs_ellipsoid,
    solver="osqp",
    ends_zeroderivs: int | None = None,
    cost_weights=None,
    tol: float = 1e-9,
    verbose: bool = False,
):
    """
    Corridor-constrained piecewise Bernstein trajectory for one robot.

    robot_facets:  per step (A, b) halfspaces separating the robot from the
                   other robots, A: (m,dim), b: (m,), meaning A x <= b; None
                   for no facets
    obs_facets:    same for obstacles (ragged; see facets_from_padded)
    lb, ub:        (dim,) environment box
    path:          (steps+1, dim) discrete plan
    deg:           polynomial degree
    cont:          derivative continuity (2 == continuous acceleration)
    timescale:     duration of one step
    ellipsoid:     (dim,) radii of the robot/robot collision ellipsoid
    obs_ellipsoid: (dim,) radii of the robot/obstacle collision ellipsoid
    solver:        name in qp_solvers.SOLVERS or a QPSolver instance

    Returns (pp, cost): PiecewisePoly with `steps` pieces and the optimal
    weighted cost. Raises ValueError on malformed input,
    CorridorInfeasibleError on an empty eroded corridor and
    QPInfeasibleError when the QP admits no solution.
    """
    path, steps, dim, vecs = _validate_inputs(
        robot_facets, obs_facets, lb, ub, path, deg, cont, timescale,
        ellipsoid, obs_ellipsoid,
    )
    if ends_zeroderivs is None:
        ends_zeroderivs = min(MAX_ENDS_ZERODERIVS, int(cont))
    elif ends_zeroderivs < 0:
        raise ValueError(f"ends_zeroderivs must be >= 0, got {ends_zeroderivs}")
    qp_solver = get_solver(solver)

    basis = BernsteinBasis.build(int(deg), int(cont), float(timescale))

    # offset the corridors by the ellipsoids, drop padding and redundant rows
    corridors = process_corridors(
        robot_facets, obs_facets, path, vecs["ellipsoid"], vecs["obs_ellipsoid"],
        tol=tol, verbose=verbose,
    )

    qp = assemble_qp(corridors, basis, vecs["lb"], vecs["ub"], path[0], path[-1], dim,
                     ends_zeroderivs=ends_zeroderivs, cost_weights=cost_weights)
    nvars = dim * basis.order * steps
    assert qp["A_ineq"].shape == (qp["b_ineq"].shape[0], nvars)
    assert qp["A_eq"].shape == (qp["b_eq"].shape[0], nvars)

    if verbose:
        print(f"[qp][setup] nvars={nvars} steps={steps} dim={dim} order={basis.order} "
              f"eq={qp['A_eq'].shape[0]} ineq={qp['A_ineq'].shape[0]} solver={qp_solver.name}")

    _check_equality_consistency(qp["A_eq"], qp["b_eq"])

    # backends minimize 1/2 x^T P x, so P = 2M keeps cost = x^T M x
    res = qp_solver.solve(
        2.0 * qp["M"], np.zeros(nvars),
        qp["A_ineq"], qp["b_ineq"], qp["A_eq"], qp["b_eq"],
        qp["lb"], qp["ub"],
    )
    if verbose:
        print(f"[qp][solve] status={res.status} cost={res.cost:.6g}")

    pp = reconstruct_pp(res.x, basis, dim, steps)
    return pp, float(res.cost)


# -----------------------------
# validation / visualization
# -----------------------------

def check_traj_in_corridor(pp: PiecewisePoly, corridors, samples_per_piece: int = 50, tol: float = 1e-6):
    """
    Check a trajectory against per-step corridors (each piece only against
    its own step).

    corridors: list of (A, b), one per piece
    Returns (max_violation, bad_count, total_count, rate).
    """
    if len(corridors) != pp.num_pieces:
        raise ValueError(f"need one corridor per piece ({pp.num_pieces}), got {len(corridors)}")

    max_v = -np.inf
    bad = 0
    total = 0
    for k, (A, b) in enumerate(corridors):
        A, b = as_facets(A, b, pp.dim)
        if b.shape[0] == 0:
            continue
        Tk = float(pp.breaks[k + 1] - pp.breaks[k])
        pts = pp.piece_eval(k, np.linspace(0.0, Tk, samples_per_piece))
        v = halfspace_violation(A, b, pts)
        total += int(v.shape[0])
        bad += int(np.sum(v > tol))
        max_v = max(max_v, float(np.max(v)))

    rate = (bad / total) if total > 0 else 0.0
    return (max_v if total > 0 else 0.0), bad, total, rate


def visualize_corridor_and_trajectory(pp: PiecewisePoly, corridors, path, lb, ub,
                                      raw_corridors=None, obstacles=None,
                                      out_path="corridor_traj.png", show: bool = False):
    """
    2D plot: eroded corridors (and optionally the raw ones), obstacle
    polygons, the sampled trajectory and the discrete path.
    """
    import matplotlib.pyplot as plt

    if pp.dim != 2:
        raise ValueError("visualize_corridor_and_trajectory only draws 2D trajectories")
    path = np.asarray(path, float)

    fig, ax = plt.subplots(1, 1, figsize=(10, 7))
    cmap = plt.get_cmap("tab10")

    for k, (A, b) in enumerate(corridors):
        color = cmap(k % 10)
        if raw_corridors is not None:
            A_raw, b_raw = as_facets(*raw_corridors[k], 2)
            poly = halfspace_to_polygon(A_raw, b_raw, lb, ub)
            if poly is not None:
                x, y = poly.exterior.xy
                ax.plot(x, y, color=color, linestyle="--", linewidth=0.8, alpha=0.6)
        poly = halfspace_to_polygon(A, b, lb, ub)
        if poly is not None:
            x, y = poly.exterior.xy
            ax.fill(x, y, color=color, alpha=0.12, linewidth=0)
            ax.plot(x, y, color=color, linewidth=1.2, alpha=0.8)

    for obs in obstacles or []:
        x, y = obs.exterior.xy
        ax.fill(x, y, color="black", alpha=0.5)

    _, pts, _ = pp.sample(dt=0.02)
    ax.plot(pts[:, 0], pts[:, 1], "b-", linewidth=2, label="trajectory")
    ax.plot(path[:, 0], path[:, 1], "o--", color="orange", markeredgecolor="black", label="discrete path")

    ax.set_xlim(lb[0], ub[0])
    ax.set_ylim(lb[1], ub[1])
    ax.set_aspect("equal", adjustable="box")
    ax.grid(True, alpha=0.3)
    ax.legend(loc="upper right")
    ax.set_title("Corridors & optimized trajectory")

    fig.tight_layout()
    fig.savefig(out_path, dpi=150, bbox_inches="tight")
    print(f"[viz][corridor_traj] saved path={out_path}")
    if show:
        plt.show()
    plt.close(fig)
