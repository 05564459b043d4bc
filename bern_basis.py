import numpy as np
from dataclasses import dataclass
from scipy.special import comb


# ---------- Bernstein polynomials in monomial form ----------
#
# Convention used everywhere in this project: a coefficient vector a of
# length `order` is lowest power first, p(t) = sum_k a[k] * t**k.

def bernstein(deg: int) -> np.ndarray:
    """
    Bernstein basis of degree `deg` on [0, 1].
    Row i holds the monomial coefficients of C(deg,i) t^i (1-t)^(deg-i).
    Returns: (order, order) with order = deg + 1
    """
    if deg < 0:
        raise ValueError(f"polynomial degree must be >= 0, got {deg}")
    order = deg + 1
    bern = np.zeros((order, order), dtype=float)
    for i in range(order):
        c = comb(deg, i, exact=True)
        # expand (1-t)^(deg-i)
        for j in range(deg - i + 1):
            bern[i, i + j] = c * comb(deg - i, j, exact=True) * (-1.0) ** j
    return bern


def stretch_time(coefs: np.ndarray, timescale: float) -> np.ndarray:
    """p(t) -> p(t / timescale), so [0,1] becomes [0,timescale]."""
    coefs = np.asarray(coefs, float)
    k = np.arange(coefs.shape[-1], dtype=float)
    return coefs / (float(timescale) ** k)


def polyder(coefs: np.ndarray) -> np.ndarray:
    """Derivative along the last axis, zero padded to keep the width fixed."""
    coefs = np.asarray(coefs, float)
    out = np.zeros_like(coefs)
    k = np.arange(1, coefs.shape[-1], dtype=float)
    out[..., :-1] = coefs[..., 1:] * k
    return out


def bernstein_derivs(bern: np.ndarray, cont: int) -> np.ndarray:
    """
    Repeated derivatives of every basis polynomial.
    Returns (cont, order, order); slice d-1 is the d-th derivative.
    Derivatives past the degree come out as all-zero slices.
    """
    if cont < 0:
        raise ValueError(f"continuity order must be >= 0, got {cont}")
    order = bern.shape[0]
    derivs = np.zeros((cont, order, order), dtype=float)
    prev = bern
    for d in range(cont):
        prev = polyder(prev)
        derivs[d] = prev
    return derivs


def time_vector(t: float, order: int) -> np.ndarray:
    """[1, t, t^2, ..., t^(order-1)]; 0**0 is taken as 1."""
    return float(t) ** np.arange(order, dtype=float)


@dataclass(frozen=True)
class BernsteinBasis:
    deg: int
    cont: int
    timescale: float
    bern: np.ndarray      # (order, order), time-stretched
    derivs: np.ndarray    # (cont, order, order)
    t0: np.ndarray        # monomials at t=0
    t1: np.ndarray        # monomials at t=timescale

    @classmethod
    def build(cls, deg: int, cont: int, timescale: float) -> "BernsteinBasis":
        if not timescale > 0.0:
            raise ValueError(f"timescale must be positive, got {timescale}")
        bern = stretch_time(bernstein(deg), timescale)
        derivs = bernstein_derivs(bern, cont)
        order = deg + 1
        for a in (bern, derivs):
            a.setflags(write=False)
        return cls(
            deg=int(deg),
            cont=int(cont),
            timescale=float(timescale),
            bern=bern,
            derivs=derivs,
            t0=time_vector(0.0, order),
            t1=time_vector(timescale, order),
        )

    @property
    def order(self) -> int:
        return self.deg + 1

    def deriv_matrix(self, d: int) -> np.ndarray:
        if d == 0:
            return self.bern
        if d > self.cont:
            # not precomputed, still well defined
            out = self.bern
            for _ in range(d):
                out = polyder(out)
            return out
        return self.derivs[d - 1]

    def eval_row(self, t: float, d: int = 0) -> np.ndarray:
        """Row over control points giving the d-th derivative at local time t."""
        return self.deriv_matrix(d) @ time_vector(t, self.order)

    def endpoint_rows(self, d: int = 0):
        """(row at t=0, row at t=timescale) for the d-th derivative."""
        D = self.deriv_matrix(d)
        return D @ self.t0, D @ self.t1

    def ctrl_to_coefs(self, ctrl: np.ndarray) -> np.ndarray:
        """
        ctrl: (order,) or (order, dim) control points of one piece.
        Returns monomial coefficients with the same shape.
        """
        return self.bern.T @ np.asarray(ctrl, float)
