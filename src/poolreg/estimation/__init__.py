"""Estimation module for poolreg: inference and convergence diagnostics."""
from .inference import (
    VarianceEstimate,
    delta_method_se,
    delta_method_variance,
    gdfa_log_odds_ratio,
    gdfa_log_odds_ratio_gradient,
    invert_hessian,
    numerical_gradient,
    numerical_hessian,
)
from .convergence_diagnostics import (
    ConvergenceChecker,
    ConvergenceDiagnostics,
    generate_convergence_table,
)
