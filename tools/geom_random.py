# geom_random.py
import numpy as np
from shapely.affinity import translate
from shapely.geometry import Polygon


def random_star_shaped_polygon(
    rng: np.random.Generator,
    n_vertices: int = 10,
    radius_mean: float = 0.6,
    radius_jitter: float = 0.25,
    angle_jitter: float = 0.25,
):
    """
    Star-shaped simple polygon around the origin: sorted angles + random radii.
    Returns a shapely Polygon.
    """
    n = int(n_vertices)
    angles = np.linspace(0, 2*np.pi, n, endpoint=False)
    angles = angles + rng.uniform(-angle_jitter, angle_jitter, size=n)
    angles = np.mod(angles, 2*np.pi)
    angles.sort()

    radii = radius_mean * (1.0 + rng.uniform(-radius_jitter, radius_jitter, size=n))
    radii = np.clip(radii, 0.05, None)

    pts = np.stack([radii*np.cos(angles), radii*np.sin(angles)], axis=1)
    return Polygon(pts).buffer(0.0)


def random_convex_polygon(rng: np.random.Generator, center=(0.0, 0.0), n_vertices: int = 8,
                          radius_mean: float = 0.6, radius_jitter: float = 0.3):
    """Convex hull of a random star-shaped polygon, moved to `center`."""
    base = random_star_shaped_polygon(rng, n_vertices=n_vertices,
                                      radius_mean=radius_mean, radius_jitter=radius_jitter)
    return translate(base.convex_hull, xoff=float(center[0]), yoff=float(center[1]))


def random_halfspaces(rng: np.random.Generator, dim: int, n: int, interior_pt,
                      offset_range=(0.2, 1.5)):
    """
    n random halfspaces a.x <= b (unit normals) that all contain interior_pt
    with a slack drawn from offset_range. Many of them end up redundant.
    """
    p = np.asarray(interior_pt, float).reshape(dim)
    A = rng.normal(size=(n, dim))
    A /= np.linalg.norm(A, axis=1, keepdims=True)
    b = A @ p + rng.uniform(*offset_range, size=n)
    return A, b


def random_points(rng: np.random.Generator, lo, hi, n: int):
    lo = np.asarray(lo, float)
    hi = np.asarray(hi, float)
    return lo + (hi - lo) * rng.random((n, lo.shape[0]))
