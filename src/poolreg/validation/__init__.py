"""Validation module for poolreg."""
from .monte_carlo import (
    MonteCarloResult,
    MonteCarloStudy,
    compute_bias,
    compute_rmse,
    compute_coverage,
    fit_to_record,
    run_parameter_recovery,
    run_error_model_comparison
)
