"""
poolreg: regression on pooled, error-prone exposure measurements.

Two maximum-likelihood model families for case-control studies in which a
continuous exposure is only measured on pools of specimens, possibly with
processing and measurement error:

    - estimate_logreg_xerrors: poolwise logistic regression, normal exposure
    - estimate_gdfa_constant: gamma discriminant function approach

Usage:
    from poolreg import estimate_logreg_xerrors

    fit = estimate_logreg_xerrors(g, y, xtilde, c, errors="processing")
    print(fit.summary())
"""

from .models.estimation import (
    EstimationConfig,
    FitResult,
    RetryState,
    estimate_gdfa_constant,
    estimate_logreg_xerrors,
)
from .analysis.odds_ratio import OddsRatioResult, gdfa_odds_ratio, logistic_odds_ratio

__version__ = "0.1.0"
