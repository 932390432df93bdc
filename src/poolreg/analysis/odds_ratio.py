"""
Odds-Ratio Reporting
====================

Exposure odds ratios with delta-method uncertainty for fitted models.

Logistic family:
    logOR = beta_x * increment
    SE    = |increment| * SE(beta_x)

Gamma discriminant family:
    logOR = 1/b0 - 1/b1  (per unit of X)
    SE    = sqrt(g' V g),  g = (1/b1^2, -1/b0^2)

Confidence intervals are Wald intervals on the log scale, exponentiated
for the odds-ratio scale.

Author: poolreg developers
"""

import numpy as np
import pandas as pd
from typing import List
from dataclasses import dataclass
from scipy import stats

from ..estimation.inference import (
    delta_method_se,
    gdfa_log_odds_ratio,
    gdfa_log_odds_ratio_gradient,
)


@dataclass
class OddsRatioResult:
    """
    Container for an exposure odds-ratio estimate.

    Attributes:
        log_or: Point estimate of the log-odds ratio
        log_or_se: Delta-method standard error (NaN without a variance estimate)
        ci_lower: Lower bound of the log-OR confidence interval
        ci_upper: Upper bound of the log-OR confidence interval
        increment: Exposure increment the odds ratio refers to
        parameters: Parameters the estimate is a function of
        z_stat: Wald statistic for logOR = 0
        p_value: Two-sided p-value
        confidence: Confidence level
    """
    log_or: float
    log_or_se: float
    ci_lower: float
    ci_upper: float
    increment: float
    parameters: List[str]
    z_stat: float = None
    p_value: float = None
    confidence: float = 0.95

    def __post_init__(self):
        if self.z_stat is None and self.log_or_se and self.log_or_se > 0:
            self.z_stat = self.log_or / self.log_or_se
        if self.p_value is None and self.z_stat is not None:
            self.p_value = 2 * stats.norm.sf(abs(self.z_stat))

    @property
    def odds_ratio(self) -> float:
        return float(np.exp(self.log_or))

    @property
    def or_ci(self):
        return float(np.exp(self.ci_lower)), float(np.exp(self.ci_upper))

    def to_series(self) -> pd.Series:
        lo, hi = self.or_ci
        return pd.Series({
            'logOR': self.log_or,
            'logOR_se': self.log_or_se,
            'OR': self.odds_ratio,
            'OR_ci_lower': lo,
            'OR_ci_upper': hi,
            'z': self.z_stat,
            'p_value': self.p_value,
        })

    def __str__(self) -> str:
        lo, hi = self.or_ci
        pct = int(round(self.confidence * 100))
        return (
            f"OR = {self.odds_ratio:.3f} per {self.increment:g} "
            f"(logOR SE: {self.log_or_se:.4f}, {pct}% CI: [{lo:.3f}, {hi:.3f}])"
        )


def _wald(log_or: float, se: float, confidence: float):
    if not 0 < confidence < 1:
        raise ValueError("confidence should be in (0, 1).")
    z = stats.norm.ppf(0.5 + confidence / 2)
    if not np.isfinite(se):
        return np.nan, np.nan
    return log_or - z * se, log_or + z * se


def logistic_odds_ratio(fit, increment: float = 1.0,
                        confidence: float = 0.95) -> OddsRatioResult:
    """
    Odds ratio for an ``increment`` change in the exposure from a logistic fit.

    Args:
        fit: FitResult from estimate_logreg_xerrors
        increment: Change in X the odds ratio refers to
        confidence: Confidence level of the interval
    """
    beta_labels = [label for label in fit.theta.index if label.startswith('beta_')]
    label = beta_labels[1]
    log_or = float(fit.theta[label] * increment)

    se = np.nan
    if fit.theta_var is not None:
        se = delta_method_se(np.array([increment]),
                             fit.theta_var.loc[[label], [label]].to_numpy())

    lo, hi = _wald(log_or, se, confidence)
    return OddsRatioResult(log_or, se, lo, hi, increment, [label], confidence=confidence)


def gdfa_odds_ratio(fit, increment: float = 1.0,
                    confidence: float = 0.95) -> OddsRatioResult:
    """
    Odds ratio implied by a gamma discriminant fit.

    Args:
        fit: FitResult from estimate_gdfa_constant
        increment: Change in X the odds ratio refers to
        confidence: Confidence level of the interval
    """
    b1 = float(fit.theta['b1'])
    b0 = float(fit.theta['b0'])
    log_or = gdfa_log_odds_ratio(b1, b0) * increment

    se = np.nan
    if fit.theta_var is not None:
        gradient = gdfa_log_odds_ratio_gradient(b1, b0) * increment
        se = delta_method_se(gradient, fit.theta_var.loc[['b1', 'b0'], ['b1', 'b0']].to_numpy())

    lo, hi = _wald(log_or, se, confidence)
    return OddsRatioResult(log_or, se, lo, hi, increment, ['b1', 'b0'], confidence=confidence)
