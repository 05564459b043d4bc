import os
import numpy as np
import matplotlib

# SHOW_PLOTS=1 opens the plot window; default is the headless backend
SHOW_PLOTS = os.environ.get("SHOW_PLOTS", "0") in ("1", "true", "True")
if not SHOW_PLOTS:
    matplotlib.use('Agg')
from shapely.geometry import LineString, Polygon

from corridor_geom import drop_invalid_rows, facets_from_padded, polygon_to_halfspace, process_corridors
from piecewise_poly import export_pp_to_matlab
from traj_qp_corridor import (
    check_traj_in_corridor,
    corridor_trajectory_optimize,
    visualize_corridor_and_trajectory,
)

QP_SOLVER = os.environ.get("CORRIDOR_QP_SOLVER", "osqp")


def make_obstacles():
    square = Polygon([(0.3, 0.35), (0.7, 0.35), (0.7, 0.75), (0.3, 0.75)])
    triangle = Polygon([(1.8, -0.6), (2.6, -0.6), (2.6, 0.2)])
    return [square, triangle]


def separating_halfspace_obstacle(p0, p1, obs: Polygon):
    """
    Pick the obstacle face that keeps the step segment p0->p1 farthest on its
    outer side. Returns (a, b) for the robot side a.x <= b, or NaNs when no
    face separates (the segment cuts the obstacle).
    """
    A_o, b_o = polygon_to_halfspace(obs)
    # obstacle lies in n.x <= c, robot must stay in n.x >= c
    margins = np.minimum(A_o @ p0, A_o @ p1) - b_o
    j = int(np.argmax(margins))
    if margins[j] <= 0.0:
        return np.full(2, np.nan), np.nan
    return -A_o[j], -b_o[j]


def separating_halfspace_robot(p0, p1, q):
    """Hyperplane halfway between the segment p0->p1 and another robot at q."""
    seg = p1 - p0
    t = float(np.clip((q - p0) @ seg / max(seg @ seg, 1e-12), 0.0, 1.0))
    c = p0 + t * seg
    n = (q - c) / np.linalg.norm(q - c)
    return n, float(n @ (0.5 * (c + q)))


def build_scene_facets(path, obstacles, other_robots):
    """
    Per-step separating hyperplanes in the upstream batch layout:
    obstacle rows padded with NaN when an obstacle gives no facet.
    """
    steps = path.shape[0] - 1
    A_obs = np.full((steps, len(obstacles), 2), np.nan)
    b_obs = np.full((steps, len(obstacles)), np.nan)
    robot_facets = []
    for s in range(steps):
        p0, p1 = path[s], path[s + 1]
        for j, obs in enumerate(obstacles):
            A_obs[s, j], b_obs[s, j] = separating_halfspace_obstacle(p0, p1, obs)
        rows = [separating_halfspace_robot(p0, p1, q) for q in other_robots]
        robot_facets.append((np.array([a for a, _ in rows]), np.array([b for _, b in rows])))
    return robot_facets, facets_from_padded(A_obs, b_obs)


def validate_traj_vs_obstacles(pp, obstacles, radius):
    _, pts, _ = pp.sample(dt=0.01)
    body = LineString([tuple(p) for p in pts]).buffer(radius)
    return sum(int(body.intersects(obs)) for obs in obstacles)


def main():
    path = np.array([
        [0.0, 0.0],
        [1.0, 0.0],
        [2.0, 1.0],
        [3.0, 1.0],
    ])
    lb = np.array([-0.5, -1.0])
    ub = np.array([3.5, 2.0])
    other_robots = [np.array([2.2, 1.7])]
    obstacles = make_obstacles()

    deg, cont, timescale = 7, 3, 1.0
    ellipsoid = np.array([0.15, 0.15])
    obs_ellipsoid = np.array([0.1, 0.1])

    robot_facets, obs_facets = build_scene_facets(path, obstacles, other_robots)
    print(f"[scene] steps={path.shape[0] - 1} obstacles={len(obstacles)} robots={len(other_robots)} "
          f"obs_facets_per_step={[f[1].shape[0] for f in obs_facets]}")

    pp, cost = corridor_trajectory_optimize(
        robot_facets, obs_facets, lb, ub, path,
        deg=deg, cont=cont, timescale=timescale,
        ellipsoid=ellipsoid, obs_ellipsoid=obs_ellipsoid,
        solver=QP_SOLVER, verbose=True,
    )
    print(f"[traj] pieces={pp.num_pieces} order={pp.order} duration={pp.duration:.2f} cost={cost:.6f}")

    # eroded corridors as the optimizer saw them, and the raw ones
    corridors = process_corridors(robot_facets, obs_facets, path, ellipsoid, obs_ellipsoid)
    raw_corridors = [
        drop_invalid_rows(np.vstack([r[0], o[0]]), np.concatenate([r[1], o[1]]))
        for r, o in zip(robot_facets, obs_facets)
    ]

    for name, cors in (("eroded", corridors), ("raw", raw_corridors)):
        max_v, bad, tot, rate = check_traj_in_corridor(pp, cors, samples_per_piece=200, tol=1e-6)
        print(f"[qp_validation][{name}] max_violation={max_v:.6f} bad_samples={bad}/{tot} rate={rate:.4f}")

    hit = validate_traj_vs_obstacles(pp, obstacles, radius=float(np.min(obs_ellipsoid)) * 0.99)
    if hit > 0:
        print(f"[qp_validation][obstacles][ALERT] obstacles_hit={hit}")
    else:
        print(f"[qp_validation][obstacles][OK] robot body clears every obstacle")

    visualize_corridor_and_trajectory(
        pp, corridors, path, lb, ub,
        raw_corridors=raw_corridors, obstacles=obstacles,
        out_path="corridor_traj_xy.png", show=SHOW_PLOTS,
    )
    export_pp_to_matlab("corridor_traj.mat", pp, cost, path=path)


if __name__ == "__main__":
    main()
