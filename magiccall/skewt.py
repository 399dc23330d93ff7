"""Multivariate skew-t distribution (Azzalini & Capitanio parameterization).

The density of a d-dimensional skew-t with direct parameters
(xi, Omega, alpha, nu) is

    f(x) = 2 t_d(x; xi, Omega, nu) T_1(alpha' w^-1 (x - xi) sqrt((nu + d) / (Q + nu)); nu + d)

where w = sqrt(diag(Omega)), Q = (x - xi)' Omega^-1 (x - xi), t_d is the
d-variate Student t density and T_1 the univariate Student t distribution
function. alpha = 0 gives the symmetric multivariate t.
"""
import math
import time
from typing import Optional, Tuple

import contourpy
import numpy as np
from scipy import optimize
from scipy import stats as sstats

from magiccall.log import logger

NU_MIN = 0.5
NU_MAX = 1e4
GRID_SIZE = 301


class FitTimeout(TimeoutError):
    """A fit ran past its deadline and was cancelled."""


class Deadline:
    """Wall-clock budget checked cooperatively by long-running fits."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def check(self):
        if time.monotonic() > self._expires:
            raise FitTimeout(f"Fit exceeded its {self.seconds:g} s deadline.")


class SkewT:
    def __init__(self, xi, omega, alpha, nu: float):
        self.xi = np.atleast_1d(np.asarray(xi, dtype=float))
        self.omega = np.atleast_2d(np.asarray(omega, dtype=float))
        self.alpha = np.atleast_1d(np.asarray(alpha, dtype=float))
        self.nu = float(nu)
        self.dim = len(self.xi)
        if self.omega.shape != (self.dim, self.dim) or len(self.alpha) != self.dim:
            raise ValueError("xi, Omega and alpha dimensions do not agree.")
        # raises LinAlgError if Omega is not positive definite
        self._chol = np.linalg.cholesky(self.omega)
        self._symmetric = sstats.multivariate_t(loc=self.xi, shape=self.omega, df=self.nu)
        self._w = np.sqrt(np.diag(self.omega))

    def __repr__(self):
        return (
            f"SkewT(xi={self.xi.tolist()}, omega={self.omega.tolist()}, "
            f"alpha={self.alpha.tolist()}, nu={self.nu:.4g})"
        )

    @property
    def symmetric(self) -> bool:
        return not np.any(self.alpha)

    def _as_points(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if x.ndim == 1:
            x = x.reshape(-1, 1) if self.dim == 1 else x.reshape(1, -1)
        if x.shape[1] != self.dim:
            raise ValueError(f"Expected {self.dim}-dimensional points, got {x.shape[1]}.")
        return x

    def mahalanobis(self, x) -> np.ndarray:
        diff = self._as_points(x) - self.xi
        scaled = np.linalg.solve(self._chol, diff.T)
        return np.einsum("ij,ij->j", scaled, scaled)

    def symmetric_logpdf(self, x) -> np.ndarray:
        """Log density of the symmetric t component (alpha = 0)."""
        return np.atleast_1d(self._symmetric.logpdf(self._as_points(x)))

    def logpdf(self, x) -> np.ndarray:
        x = self._as_points(x)
        log_density = self.symmetric_logpdf(x)
        if self.symmetric:
            return log_density
        q = self.mahalanobis(x)
        z = ((x - self.xi) / self._w) @ self.alpha * np.sqrt((self.nu + self.dim) / (q + self.nu))
        return math.log(2) + log_density + sstats.t.logcdf(z, df=self.nu + self.dim)

    def pdf(self, x) -> np.ndarray:
        with np.errstate(over="ignore", under="ignore", invalid="ignore"):
            return np.exp(self.logpdf(x))

    def contour_level(self, prob: float) -> float:
        """
        Density level enclosing probability ``prob``.

        Uses Q / d ~ F(d, nu) for the symmetric component, which is exact when
        alpha = 0 and an approximation otherwise.
        """
        if not 0 < prob < 1:
            raise ValueError(f"Contour probability must lie in (0, 1), got {prob}.")
        radius = self.dim * sstats.f.ppf(prob, self.dim, self.nu)
        # any point whose squared Mahalanobis distance from xi is radius
        point = self.xi + self._chol[:, 0] * math.sqrt(radius)
        return float(np.exp(self.symmetric_logpdf(point.reshape(1, -1))[0]))

    def density_contour(self, prob: float, grid_size: int = GRID_SIZE) -> Tuple[np.ndarray, float]:
        """
        Contour of the fitted density at probability ``prob``.

        The density is evaluated on a regular grid around xi and the level set is
        traced with contourpy (two dimensions) or by interpolating the level
        crossings (one dimension).

        :return: The contour points (n x d) and the mean density along them
        :raises ValueError: if no contour line lies inside the grid
        """
        level = self.contour_level(prob)
        radius = math.sqrt(self.dim * sstats.f.ppf(prob, self.dim, self.nu))
        half_width = 2 * (radius + 3) * self._w
        axes = [
            np.linspace(self.xi[k] - half_width[k], self.xi[k] + half_width[k], grid_size)
            for k in range(self.dim)
        ]

        if self.dim == 1:
            grid = axes[0]
            excess = self.pdf(grid) - level
            crossings = np.nonzero(np.diff(np.sign(excess)) != 0)[0]
            points = [
                grid[i] - excess[i] * (grid[i + 1] - grid[i]) / (excess[i + 1] - excess[i])
                for i in crossings
            ]
            contour = np.asarray(points, dtype=float).reshape(-1, 1)
        else:
            gx, gy = np.meshgrid(axes[0], axes[1])
            z = self.pdf(np.column_stack([gx.ravel(), gy.ravel()])).reshape(gx.shape)
            generator = contourpy.contour_generator(
                x=axes[0], y=axes[1], z=z, line_type=contourpy.LineType.Separate
            )
            lines = generator.lines(level)
            contour = max(lines, key=len) if len(lines) else np.empty((0, 2))

        if len(contour) == 0:
            raise ValueError(f"No density contour at level {level:.4g} inside the evaluation grid.")
        return contour, float(np.mean(self.pdf(contour)))


def fit_skew_t(data, fix_alpha: bool = False, deadline: Optional[Deadline] = None) -> SkewT:
    """
    Maximum likelihood fit of a skew-t distribution.

    The data are standardised per column, the likelihood is maximised with
    Nelder-Mead over (xi, Cholesky factor of Omega, alpha, log nu) and the
    estimates are mapped back to the original scale.

    :param data: Observations, n x d array (d = 1 or 2) or 1-D array
    :param fix_alpha: Constrain the shape parameter alpha to 0 (symmetric t)
    :param deadline: Optional deadline, checked at every likelihood evaluation
    :raises FitTimeout: if the deadline passes during the fit
    :raises ValueError: if the data cannot support a fit
    """
    x = np.asarray(data, dtype=float)
    x = x.reshape(len(x), -1)
    x = x[np.all(np.isfinite(x), axis=1)]
    n, d = x.shape
    n_params = d + d * (d + 1) // 2 + (0 if fix_alpha else d) + 1
    if n <= n_params:
        raise ValueError(f"{n} observations are too few to fit {n_params} skew-t parameters.")

    center = x.mean(axis=0)
    scale = x.std(axis=0, ddof=1)
    if not np.all(scale > 0):
        raise ValueError("Cannot fit a skew-t to data with zero variance.")
    z = (x - center) / scale

    tril = np.tril_indices(d)
    chol0 = np.linalg.cholesky(np.atleast_2d(np.cov(z, rowvar=False)) + 1e-9 * np.eye(d))
    chol0[np.diag_indices(d)] = np.log(np.diag(chol0))
    theta0 = np.concatenate([
        np.zeros(d),
        chol0[tril],
        np.zeros(0 if fix_alpha else d),
        [math.log(10.0)],
    ])

    def unpack(theta):
        xi = theta[:d]
        chol = np.zeros((d, d))
        chol[tril] = theta[d:d + len(tril[0])]
        chol[np.diag_indices(d)] = np.exp(chol[np.diag_indices(d)])
        offset = d + len(tril[0])
        alpha = np.zeros(d) if fix_alpha else theta[offset:offset + d]
        nu = math.exp(min(max(theta[-1], math.log(NU_MIN)), math.log(NU_MAX)))
        return SkewT(xi, chol @ chol.T, alpha, nu)

    def objective(theta):
        if deadline is not None:
            deadline.check()
        try:
            dist = unpack(theta)
        except (np.linalg.LinAlgError, ValueError):
            return np.inf
        with np.errstate(over="ignore", under="ignore", invalid="ignore", divide="ignore"):
            loglik = dist.logpdf(z).sum()
        return -loglik if np.isfinite(loglik) else np.inf

    simplex = np.vstack([theta0, theta0 + 0.1 * np.eye(len(theta0))])
    result = optimize.minimize(
        objective,
        theta0,
        method="Nelder-Mead",
        options={
            "maxiter": 2000 * len(theta0),
            "xatol": 1e-6,
            "fatol": 1e-8,
            "adaptive": True,
            "initial_simplex": simplex,
        },
    )
    if not np.isfinite(result.fun):
        raise ValueError("Skew-t likelihood is not finite at the optimum.")
    if not result.success:
        logger.debug(f"Skew-t optimiser stopped early: {result.message}")

    fitted = unpack(result.x)
    return SkewT(
        xi=center + scale * fitted.xi,
        omega=fitted.omega * np.outer(scale, scale),
        alpha=fitted.alpha,
        nu=fitted.nu,
    )
