import numpy as np
from scipy.optimize import linprog
from scipy.spatial import HalfspaceIntersection
from shapely.geometry import MultiPoint, Polygon
from shapely.geometry.polygon import orient


class CorridorInfeasibleError(RuntimeError):
    """The eroded corridor of a step does not contain its interior point."""

    def __init__(self, step, max_violation, detail=""):
        self.step = step
        self.max_violation = float(max_violation)
        msg = (f"corridor infeasible at step={step}: interior point violates "
               f"eroded halfspaces by {self.max_violation:.3g}")
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


# ---------- facet containers ----------

def as_facets(A, b, dim: int):
    """
    Normalize one step's halfspace system A x <= b.
    A: (m,dim) or None, b: (m,) or None. Empty systems are allowed.
    """
    if A is None or b is None:
        return np.zeros((0, dim), dtype=float), np.zeros((0,), dtype=float)
    A = np.asarray(A, float)
    b = np.asarray(b, float).reshape(-1)
    if A.size == 0 and b.size == 0:
        return A.reshape(0, dim), b
    if A.ndim != 2 or A.shape[1] != dim:
        raise ValueError(f"halfspace normals must have shape (m,{dim}), got {A.shape}")
    if A.shape[0] != b.shape[0]:
        raise ValueError(f"halfspace count mismatch: A has {A.shape[0]} rows, b has {b.shape[0]}")
    return A, b


def facets_from_padded(A, b):
    """
    Split a NaN-padded batch into per-step facet lists.

    A: (steps, m_max, dim), b: (steps, m_max)
    Rows beyond a step's real facet count carry NaN and are dropped.
    Returns list of (A_s, b_s).
    """
    A = np.asarray(A, float)
    b = np.asarray(b, float)
    if A.ndim != 3 or b.ndim != 2 or A.shape[:2] != b.shape:
        raise ValueError(f"padded facets must be (steps,m,dim) and (steps,m), got {A.shape} and {b.shape}")
    return [drop_invalid_rows(A[s], b[s]) for s in range(A.shape[0])]


def box_halfspaces(lo, hi):
    """Axis aligned box lo <= x <= hi as A x <= b."""
    lo = np.asarray(lo, float).reshape(-1)
    hi = np.asarray(hi, float).reshape(-1)
    eye = np.eye(lo.shape[0])
    return np.vstack([eye, -eye]), np.concatenate([hi, -lo])


# ---------- erosion / cleanup / redundancy ----------

def erode_by_ellipsoid(A, b, radii):
    """
    Shrink A x <= b by the support of the ellipsoid diag(radii):
      b_j <- b_j - ||diag(r) a_j||
    A point satisfying the eroded system keeps the whole ellipsoid inside.
    """
    A = np.asarray(A, float)
    b = np.asarray(b, float).reshape(-1)
    r = np.asarray(radii, float).reshape(-1)
    if A.shape[0] == 0:
        return b.copy()
    return b - np.linalg.norm(A * r[None, :], axis=1)


def drop_invalid_rows(A, b):
    """Drop rows with NaN offset or NaN normal (padding of ragged inputs)."""
    A = np.asarray(A, float)
    b = np.asarray(b, float).reshape(-1)
    bad = np.isnan(b)
    if A.shape[0]:
        bad |= np.isnan(A).any(axis=1)
    return A[~bad], b[~bad]


def halfspace_violation(A, b, pts):
    """max_j (a_j . p - b_j) for each point; -inf for an empty system."""
    pts = np.atleast_2d(np.asarray(pts, float))
    if len(b) == 0:
        return np.full(pts.shape[0], -np.inf)
    v = pts @ np.asarray(A, float).T - np.asarray(b, float)[None, :]
    return np.max(v, axis=1)


def noredund(A, b, interior_pt, tol: float = 1e-9, step=None):
    """
    Remove redundant halfspaces from A x <= b.

    Row k is redundant when max a_k.x over the remaining rows stays <= b_k.
    The max is a small LP; a shifted copy a_k.x <= b_k + 1 keeps it bounded.
    Rows are removed one at a time so duplicated facets keep one copy.
    interior_pt must satisfy the system, otherwise CorridorInfeasibleError.
    """
    A = np.asarray(A, float)
    b = np.asarray(b, float).reshape(-1)
    p = np.asarray(interior_pt, float).reshape(-1)
    m = b.shape[0]
    if m == 0:
        return A, b

    viol = A @ p - b
    if np.max(viol) > tol:
        j = int(np.argmax(viol))
        raise CorridorInfeasibleError(step, viol[j], detail=f"facet={j} offset={b[j]:.4g}")

    dim = A.shape[1]
    keep = np.ones(m, dtype=bool)
    for k in range(m):
        a_k = A[k]
        n_k = float(np.linalg.norm(a_k))
        if n_k < 1e-12:
            # 0.x <= b_k with b_k >= 0 (checked above)
            keep[k] = False
            continue

        others = keep.copy()
        others[k] = False
        A_ub = np.vstack([A[others], a_k[None, :]])
        b_ub = np.concatenate([b[others], [b[k] + 1.0]])
        res = linprog(-a_k, A_ub=A_ub, b_ub=b_ub,
                      bounds=[(None, None)] * dim, method="highs")
        if res.status != 0:
            raise RuntimeError(f"redundancy LP failed at step={step} facet={k}: {res.message}")
        if -res.fun <= b[k] + tol * n_k:
            keep[k] = False

    return A[keep], b[keep]


def process_step_corridor(A_rob, b_rob, A_obs, b_obs, ellipsoid, obs_ellipsoid,
                          interior_pt, step=None, tol: float = 1e-9, verbose: bool = False):
    """
    One step of corridor preprocessing:
      erode robot and obstacle halfspaces by their ellipsoids,
      drop NaN rows, then drop redundant rows.
    Returns (A, b) of the eroded, reduced corridor.
    """
    p = np.asarray(interior_pt, float).reshape(-1)
    dim = p.shape[0]
    A_r, b_r = as_facets(A_rob, b_rob, dim)
    A_o, b_o = as_facets(A_obs, b_obs, dim)

    A = np.vstack([A_r, A_o])
    b = np.concatenate([
        erode_by_ellipsoid(A_r, b_r, ellipsoid),
        erode_by_ellipsoid(A_o, b_o, obs_ellipsoid),
    ])
    A, b = drop_invalid_rows(A, b)
    n_valid = b.shape[0]

    A, b = noredund(A, b, p, tol=tol, step=step)
    if verbose:
        print(f"[corridor][noredund] step={step} input={A_r.shape[0] + A_o.shape[0]} "
              f"valid={n_valid} kept={b.shape[0]}")
    return A, b


def process_corridors(robot_facets, obs_facets, path, ellipsoid, obs_ellipsoid,
                      tol: float = 1e-9, verbose: bool = False):
    """
    robot_facets, obs_facets: per-step sequences of (A, b) (or None)
    path: (steps+1, dim). The interior point of step s is the midpoint
    of path[s] and path[s+1].
    Returns list of (A, b), one per step.
    """
    path = np.asarray(path, float)
    corridors = []
    for s in range(path.shape[0] - 1):
        A_rob, b_rob = robot_facets[s] if robot_facets[s] is not None else (None, None)
        A_obs, b_obs = obs_facets[s] if obs_facets[s] is not None else (None, None)
        interior_pt = 0.5 * (path[s] + path[s + 1])
        corridors.append(process_step_corridor(
            A_rob, b_rob, A_obs, b_obs, ellipsoid, obs_ellipsoid,
            interior_pt, step=s, tol=tol, verbose=verbose,
        ))
    return corridors


# ---------- geometry helpers (2D corridors via shapely) ----------

def chebyshev_center(A, b):
    """
    Largest inscribed ball of A x <= b.
    Returns (center, radius); radius < 0 means the system is empty,
    radius = inf an unbounded inscribed ball.
    """
    A = np.asarray(A, float)
    b = np.asarray(b, float).reshape(-1)
    dim = A.shape[1]
    if b.shape[0] == 0:
        return np.zeros(dim), np.inf
    norms = np.linalg.norm(A, axis=1)
    c = np.zeros(dim + 1)
    c[-1] = -1.0
    A_ub = np.hstack([A, norms[:, None]])
    res = linprog(c, A_ub=A_ub, b_ub=b, bounds=[(None, None)] * dim + [(None, None)],
                  method="highs")
    if res.status == 3:
        return np.full(dim, np.nan), np.inf
    if res.status == 2:
        return np.full(dim, np.nan), -1.0
    if res.status != 0:
        raise RuntimeError(f"chebyshev center LP failed: {res.message}")
    return res.x[:dim], float(res.x[-1])


def halfspace_to_polygon(A, b, clip_lo=None, clip_hi=None):
    """
    Shapely polygon of a 2D halfspace system, optionally clipped by a box
    (needed for unbounded corridors). Returns None for an empty/degenerate set.
    """
    A = np.asarray(A, float)
    b = np.asarray(b, float).reshape(-1)
    if A.size and A.shape[1] != 2:
        raise ValueError("halfspace_to_polygon only handles 2D systems")
    if clip_lo is not None and clip_hi is not None:
        A_box, b_box = box_halfspaces(clip_lo, clip_hi)
        A = np.vstack([A.reshape(-1, 2), A_box])
        b = np.concatenate([b, b_box])

    center, radius = chebyshev_center(A, b)
    if not np.isfinite(radius):
        raise ValueError("halfspace system is unbounded, pass clip_lo/clip_hi")
    if radius <= 1e-12:
        return None

    # scipy convention: [A, -b] . [x, 1] <= 0
    hs = HalfspaceIntersection(np.hstack([A, -b[:, None]]), center)
    poly = MultiPoint([tuple(p) for p in hs.intersections]).convex_hull
    if poly.geom_type != "Polygon" or poly.is_empty:
        return None
    return poly


def polygon_to_halfspace(poly: Polygon, eps_edge: float = 1e-9):
    """
    Convert a convex shapely polygon to A x <= b with unit outward normals.
    Non-convex input is replaced by its convex hull.
    Returns (A, b) or (None, None) for empty/degenerate polygons.
    """
    if poly is None or poly.is_empty:
        return None, None
    poly = poly.convex_hull
    if poly.geom_type != "Polygon" or poly.area < 1e-12:
        return None, None
    poly = orient(poly, sign=1.0)  # CCW

    coords = np.asarray(poly.exterior.coords, dtype=float)[:-1]
    A = []
    b = []
    for i in range(coords.shape[0]):
        p0 = coords[i]
        e = coords[(i + 1) % coords.shape[0]] - p0
        elen = float(np.linalg.norm(e))
        if elen < eps_edge:
            continue
        # interior is on the left of each CCW edge
        n = np.array([e[1], -e[0]]) / elen
        A.append(n)
        b.append(float(n @ p0))

    if len(A) < 3:
        return None, None
    return np.asarray(A, float), np.asarray(b, float)
