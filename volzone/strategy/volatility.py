"""Volatility forecaster — GARCH-family variance models averaged into a daily %.

Three conditional-variance models are fitted by Gaussian maximum likelihood
on percentage log returns:

    GARCH(1,1)      σ²ₜ = ω + α·ε²ₜ₋₁ + β·σ²ₜ₋₁
    GJR-GARCH(1,1)  σ²ₜ = ω + (α + γ·1[εₜ₋₁<0])·ε²ₜ₋₁ + β·σ²ₜ₋₁
    EGARCH(1,1)     ln σ²ₜ = ω + α·(|zₜ₋₁| − √(2/π)) + γ·zₜ₋₁ + β·ln σ²ₜ₋₁

Any model that fails to fit or forecast falls back to an EWMA estimate
(λ = 0.94) for that model alone.  The mean of the three per-model values is
clamped to ``[MIN_VOL_PCT, MAX_VOL_PCT]``.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Protocol, Sequence

import numpy as np
from scipy.optimize import minimize

from volzone.errors import InsufficientData, ModelFitError, NonFiniteInput
from volzone.strategy.models import VolatilityEstimate

logger = logging.getLogger("volzone")

MIN_CLOSES = 30
MIN_VOL_PCT = 0.01
MAX_VOL_PCT = 0.10
DEFAULT_HORIZON = 5
EWMA_LAMBDA = 0.94

_RETURN_SCALE = 100.0  # fit on percentage returns for a well-conditioned optimiser
_VARIANCE_FLOOR = 1e-8
_PENALTY = 1e10
_MAX_ITERATIONS = 200
_EXPECTED_ABS_Z = math.sqrt(2.0 / math.pi)


@dataclass(frozen=True)
class FittedVariance:
    """Parameters of a fitted model plus the terminal state of its recursion.

    ``last_variance`` and ``last_residual`` are in scaled (percentage) units.
    """

    model: str
    params: dict[str, float]
    last_variance: float
    last_residual: float
    log_likelihood: float


class VarianceModel(Protocol):
    """Interface shared by every conditional-variance model."""

    name: str

    def fit(self, returns: np.ndarray) -> FittedVariance:
        """Fit to log returns; raise ``ModelFitError`` on failure."""
        ...

    def forecast(self, fitted: FittedVariance, horizon: int) -> float:
        """Per-period volatility (a fraction) ``horizon`` steps ahead."""
        ...


# ── Shared MLE machinery ─────────────────────────────────────────────────


class _MaximumLikelihoodModel:
    """Fits ``_variance_path`` by minimising the Gaussian negative log-likelihood."""

    name = "base"
    param_names: tuple[str, ...] = ()

    def __init__(self, max_iterations: int = _MAX_ITERATIONS) -> None:
        self._max_iterations = max_iterations

    # Subclasses provide the recursion and the optimiser set-up.

    def _variance_path(self, params: np.ndarray, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _initial(self, sample_var: float) -> np.ndarray:
        raise NotImplementedError

    def _bounds(self, sample_var: float) -> list[tuple[float, float]]:
        raise NotImplementedError

    def _constraints(self) -> list[dict]:
        return []

    def _neg_log_likelihood(self, params: np.ndarray, x: np.ndarray) -> float:
        sigma2 = self._variance_path(params, x)
        if not np.all(np.isfinite(sigma2)) or np.any(sigma2 <= 0):
            return _PENALTY
        nll = 0.5 * np.sum(np.log(2 * np.pi) + np.log(sigma2) + x ** 2 / sigma2)
        if not np.isfinite(nll):
            return _PENALTY
        return float(nll)

    def fit(self, returns: np.ndarray) -> FittedVariance:
        x = (returns - returns.mean()) * _RETURN_SCALE
        sample_var = float(np.var(x))
        if sample_var <= 0:
            raise ModelFitError(f"{self.name}: zero-variance returns")

        result = minimize(
            self._neg_log_likelihood,
            self._initial(sample_var),
            args=(x,),
            method="SLSQP",
            bounds=self._bounds(sample_var),
            constraints=self._constraints(),
            options={"maxiter": self._max_iterations},
        )
        if not result.success:
            raise ModelFitError(f"{self.name}: optimiser did not converge ({result.message})")
        if not np.all(np.isfinite(result.x)) or result.fun >= _PENALTY:
            raise ModelFitError(f"{self.name}: invalid parameters {result.x!r}")

        sigma2 = self._variance_path(result.x, x)
        return FittedVariance(
            model=self.name,
            params={k: float(v) for k, v in zip(self.param_names, result.x)},
            last_variance=float(sigma2[-1]),
            last_residual=float(x[-1]),
            log_likelihood=-float(result.fun),
        )

    def forecast(self, fitted: FittedVariance, horizon: int) -> float:
        sigma2 = self._forecast_variance(fitted, horizon)
        if not math.isfinite(sigma2) or sigma2 <= 0:
            raise ModelFitError(f"{self.name}: non-finite forecast")
        return math.sqrt(sigma2) / _RETURN_SCALE

    def _forecast_variance(self, fitted: FittedVariance, horizon: int) -> float:
        raise NotImplementedError


# ── GARCH(1,1) ───────────────────────────────────────────────────────────


class GarchModel(_MaximumLikelihoodModel):
    name = "garch"
    param_names = ("omega", "alpha", "beta")

    def _variance_path(self, params, x):
        omega, alpha, beta = params
        sigma2 = np.empty_like(x)
        sigma2[0] = np.var(x)
        for t in range(1, len(x)):
            sigma2[t] = omega + alpha * x[t - 1] ** 2 + beta * sigma2[t - 1]
        return sigma2

    def _initial(self, sample_var):
        return np.array([sample_var * 0.05, 0.05, 0.90])

    def _bounds(self, sample_var):
        return [(_VARIANCE_FLOOR, 10 * sample_var), (0.0, 0.999), (0.0, 0.999)]

    def _constraints(self):
        return [{"type": "ineq", "fun": lambda p: 0.999 - p[1] - p[2]}]

    def _forecast_variance(self, fitted, horizon):
        p = fitted.params
        persistence = p["alpha"] + p["beta"]
        sigma2 = p["omega"] + p["alpha"] * fitted.last_residual ** 2 + p["beta"] * fitted.last_variance
        for _ in range(horizon - 1):
            sigma2 = p["omega"] + persistence * sigma2
        return sigma2


# ── GJR-GARCH(1,1) ───────────────────────────────────────────────────────


class GjrGarchModel(_MaximumLikelihoodModel):
    name = "gjr_garch"
    param_names = ("omega", "alpha", "gamma", "beta")

    def _variance_path(self, params, x):
        omega, alpha, gamma, beta = params
        sigma2 = np.empty_like(x)
        sigma2[0] = np.var(x)
        for t in range(1, len(x)):
            shock = x[t - 1]
            leverage = gamma if shock < 0 else 0.0
            sigma2[t] = omega + (alpha + leverage) * shock ** 2 + beta * sigma2[t - 1]
        return sigma2

    def _initial(self, sample_var):
        return np.array([sample_var * 0.05, 0.03, 0.04, 0.90])

    def _bounds(self, sample_var):
        return [
            (_VARIANCE_FLOOR, 10 * sample_var),
            (0.0, 0.999),
            (0.0, 0.999),
            (0.0, 0.999),
        ]

    def _constraints(self):
        return [{"type": "ineq", "fun": lambda p: 0.999 - p[1] - 0.5 * p[2] - p[3]}]

    def _forecast_variance(self, fitted, horizon):
        p = fitted.params
        shock = fitted.last_residual
        leverage = p["gamma"] if shock < 0 else 0.0
        sigma2 = p["omega"] + (p["alpha"] + leverage) * shock ** 2 + p["beta"] * fitted.last_variance
        persistence = p["alpha"] + 0.5 * p["gamma"] + p["beta"]
        for _ in range(horizon - 1):
            sigma2 = p["omega"] + persistence * sigma2
        return sigma2


# ── EGARCH(1,1) ──────────────────────────────────────────────────────────


class EgarchModel(_MaximumLikelihoodModel):
    name = "egarch"
    param_names = ("omega", "alpha", "gamma", "beta")

    def _variance_path(self, params, x):
        omega, alpha, gamma, beta = params
        log_sigma2 = np.empty_like(x)
        log_sigma2[0] = math.log(np.var(x))
        for t in range(1, len(x)):
            z = x[t - 1] / math.exp(0.5 * log_sigma2[t - 1])
            step = (
                omega
                + alpha * (abs(z) - _EXPECTED_ABS_Z)
                + gamma * z
                + beta * log_sigma2[t - 1]
            )
            log_sigma2[t] = min(max(step, -50.0), 50.0)
        return np.exp(log_sigma2)

    def _initial(self, sample_var):
        return np.array([math.log(sample_var) * 0.05, 0.10, 0.0, 0.95])

    def _bounds(self, sample_var):
        return [(-10.0, 10.0), (-1.0, 2.0), (-1.0, 1.0), (-0.999, 0.999)]

    def _forecast_variance(self, fitted, horizon):
        p = fitted.params
        log_sigma2 = math.log(fitted.last_variance)
        z = fitted.last_residual / math.sqrt(fitted.last_variance)
        log_sigma2 = (
            p["omega"]
            + p["alpha"] * (abs(z) - _EXPECTED_ABS_Z)
            + p["gamma"] * z
            + p["beta"] * log_sigma2
        )
        # Beyond one step the expected shock terms vanish.
        for _ in range(horizon - 1):
            log_sigma2 = p["omega"] + p["beta"] * log_sigma2
        return math.exp(min(log_sigma2, 50.0))


DEFAULT_MODELS: tuple[VarianceModel, ...] = (GarchModel(), EgarchModel(), GjrGarchModel())


# ── EWMA fallback ────────────────────────────────────────────────────────


def ewma_volatility(returns: Sequence[float], lam: float = EWMA_LAMBDA) -> float:
    """RiskMetrics EWMA volatility of *returns* (a fraction).

    The variance is seeded with the first squared return and floored at
    ``1e-8``.
    """
    if len(returns) == 0:
        raise InsufficientData("Need at least 1 return for an EWMA estimate")
    variance = float(returns[0]) ** 2
    for r in returns[1:]:
        variance = lam * variance + (1 - lam) * float(r) ** 2
    return math.sqrt(max(variance, _VARIANCE_FLOOR))


# ── Public API ───────────────────────────────────────────────────────────


def log_returns(closes: Sequence[float]) -> np.ndarray:
    """Log returns of a close series; rejects non-finite or non-positive prices."""
    prices = np.asarray(closes, dtype=float)
    if not np.all(np.isfinite(prices)):
        raise NonFiniteInput("Close series contains NaN or infinite values")
    if np.any(prices <= 0):
        raise NonFiniteInput("Close series contains non-positive prices")
    return np.diff(np.log(prices))


def forecast_volatility(
    closes: Sequence[float],
    horizon: int = DEFAULT_HORIZON,
    as_of_day: Optional[date] = None,
    models: Optional[Sequence[VarianceModel]] = None,
) -> VolatilityEstimate:
    """Forecast daily volatility from a series of daily closes.

    Args:
        closes: Daily closes, oldest first.  At least ``MIN_CLOSES`` values.
        horizon: Forecast horizon in days.
        as_of_day: Day the estimate applies to.  Defaults to today (UTC).
        models: Variance models to average.  Defaults to GARCH, EGARCH and
                GJR-GARCH.

    Returns:
        A ``VolatilityEstimate`` whose ``averaged_pct`` lies in
        ``[MIN_VOL_PCT, MAX_VOL_PCT]``.

    Raises:
        InsufficientData: fewer than ``MIN_CLOSES`` closes.
        NonFiniteInput: a close is NaN, infinite or not positive.
    """
    if len(closes) < MIN_CLOSES:
        raise InsufficientData(
            f"Need at least {MIN_CLOSES} closes for a volatility forecast, got {len(closes)}"
        )
    if horizon < 1:
        raise ValueError(f"horizon must be >= 1, got {horizon}")

    returns = log_returns(closes)
    if models is None:
        models = DEFAULT_MODELS
    if as_of_day is None:
        as_of_day = datetime.now(timezone.utc).date()

    per_model: dict[str, float] = {}
    fallbacks: list[str] = []
    for model in models:
        try:
            fitted = model.fit(returns)
            per_model[model.name] = model.forecast(fitted, horizon)
        except ModelFitError as exc:
            logger.warning("%s fit failed, using EWMA fallback: %s", model.name, exc)
            per_model[model.name] = ewma_volatility(returns)
            fallbacks.append(model.name)

    mean_pct = sum(per_model.values()) / len(per_model)
    averaged = min(MAX_VOL_PCT, max(MIN_VOL_PCT, mean_pct))

    return VolatilityEstimate(
        per_model_pct=per_model,
        averaged_pct=averaged,
        data_point_count=len(closes),
        as_of_day=as_of_day,
        fallback_models=tuple(fallbacks),
    )
