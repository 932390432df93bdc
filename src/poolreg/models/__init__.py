"""
Models module for poolreg.

Pooled data and stratification:
    - data: PoolData, prepare_pools, compute_offsets, stratify
    - regimes: error-regime parameter layouts

Likelihoods:
    - integration: latent-exposure quadrature with degeneracy recovery
    - likelihood: stratified poolwise likelihood base
    - logistic: poolwise logistic regression, normal exposure
    - gdfa: gamma discriminant function approach

Estimation:
    - estimation: optimizer driver, FitResult and entry points
"""

from .data import PoolData, Strata, StratumSlice, compute_offsets, prepare_pools, stratify
from .regimes import ParameterLayout, error_variance_labels, gdfa_layout, logreg_layout
from .integration import IntegralResult, LatentIntegrator, POSITIVE_LINE, REAL_LINE
from .likelihood import DegenerateUnit, LikelihoodEvaluation, PoolwiseLikelihood
from .logistic import PoolwiseLogisticLikelihood
from .gdfa import GammaDiscriminantLikelihood
from .estimation import (
    EstimationConfig,
    FitResult,
    OptimizerDriver,
    RetryState,
    estimate_gdfa_constant,
    estimate_logreg_xerrors,
    fit_likelihood,
)
