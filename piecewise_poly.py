import numpy as np
from dataclasses import dataclass
from scipy.io import savemat

from bern_basis import polyder


@dataclass
class PiecewisePoly:
    """
    Piecewise polynomial trajectory.

    breaks: (K+1,) global breakpoints
    coefs:  (K, dim, order) local monomial coefficients, lowest power first;
            piece k is evaluated at tau = t - breaks[k]
    """
    breaks: np.ndarray
    coefs: np.ndarray

    def __post_init__(self):
        self.breaks = np.asarray(self.breaks, float).reshape(-1)
        self.coefs = np.asarray(self.coefs, float)
        if self.coefs.ndim != 3:
            raise ValueError(f"coefs must be (pieces, dim, order), got {self.coefs.shape}")
        if self.breaks.shape[0] != self.coefs.shape[0] + 1:
            raise ValueError(f"need {self.coefs.shape[0] + 1} breaks, got {self.breaks.shape[0]}")
        if np.any(np.diff(self.breaks) <= 0.0):
            raise ValueError("breaks must be strictly increasing")

    @property
    def num_pieces(self) -> int:
        return self.coefs.shape[0]

    @property
    def dim(self) -> int:
        return self.coefs.shape[1]

    @property
    def order(self) -> int:
        return self.coefs.shape[2]

    @property
    def duration(self) -> float:
        return float(self.breaks[-1] - self.breaks[0])

    def piece_eval(self, k: int, tau, deriv: int = 0) -> np.ndarray:
        """Evaluate piece k at local time(s) tau. Returns (dim,) or (N,dim)."""
        c = self.coefs[k]
        for _ in range(deriv):
            c = polyder(c)
        tau = np.asarray(tau, float)
        V = tau[..., None] ** np.arange(self.order, dtype=float)
        return V @ c.T

    def find_piece(self, t) -> np.ndarray:
        k = np.searchsorted(self.breaks, np.asarray(t, float), side="right") - 1
        return np.clip(k, 0, self.num_pieces - 1)

    def __call__(self, t, deriv: int = 0) -> np.ndarray:
        t = np.asarray(t, float)
        scalar = t.ndim == 0
        tt = np.clip(np.atleast_1d(t), self.breaks[0], self.breaks[-1])
        k = self.find_piece(tt)
        tau = tt - self.breaks[k]

        out = np.empty((tt.shape[0], self.dim), dtype=float)
        for kk in np.unique(k):
            mask = (k == kk)
            out[mask] = self.piece_eval(int(kk), tau[mask], deriv)
        return out[0] if scalar else out

    def derivative(self, n: int = 1) -> "PiecewisePoly":
        c = self.coefs
        for _ in range(n):
            c = polyder(c)
        return PiecewisePoly(self.breaks.copy(), c)

    def sample(self, dt: float = 0.02):
        """
        Uniform samples per piece (both piece ends included).
        Returns sample_t (M,), samples (M,dim), sample_seg (M,)
        """
        sample_t = []
        samples = []
        sample_seg = []
        for k in range(self.num_pieces):
            Tk = float(self.breaks[k + 1] - self.breaks[k])
            m = max(2, int(np.ceil(Tk / dt)) + 1)
            ts = np.linspace(0.0, Tk, m)
            sample_t.append(self.breaks[k] + ts)
            samples.append(self.piece_eval(k, ts))
            sample_seg.append(np.full(m, k, dtype=int))
        return np.concatenate(sample_t), np.vstack(samples), np.concatenate(sample_seg)

    def to_ppform(self) -> np.ndarray:
        """MATLAB mkpp coefficient layout: (K*dim, order), highest power first."""
        return self.coefs[:, :, ::-1].reshape(self.num_pieces * self.dim, self.order)


def export_pp_to_matlab(out_path, pp: PiecewisePoly, cost: float, path=None):
    """Save the trajectory as a MATLAB ppform-compatible struct."""
    export = {
        "pp": {
            "form": "pp",
            "breaks": pp.breaks,
            "coefs": pp.to_ppform(),
            "pieces": int(pp.num_pieces),
            "order": int(pp.order),
            "dim": int(pp.dim),
        },
        "cost": float(cost),
    }
    if path is not None:
        # MATLAB side keeps waypoints as columns
        export["path"] = np.asarray(path, float).T
    savemat(out_path, export, do_compression=True)
    print(f"[export][matlab] saved path={out_path}")
