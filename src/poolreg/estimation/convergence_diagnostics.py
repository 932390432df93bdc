"""
Convergence Diagnostics Module
==============================

Post-fit checks on a maximum-likelihood solution.

Key Features:
- Projected gradient norm at the optimum (box-bound aware)
- Hessian eigenvalue analysis for identification
- Condition number computation
- Summary table across fits

Author: poolreg developers
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field


@dataclass
class ConvergenceDiagnostics:
    """Container for convergence diagnostic results."""
    converged: bool
    iterations: int
    final_ll: float
    gradient_norm: float
    hessian_condition_number: float
    min_eigenvalue: float
    max_eigenvalue: float
    problematic_params: List[str] = field(default_factory=list)
    optimization_message: str = ""

    GRADIENT_THRESHOLD: float = 1e-3
    CONDITION_THRESHOLD: float = 1e8
    EIGENVALUE_THRESHOLD: float = 1e-8

    @property
    def is_well_conditioned(self) -> bool:
        return self.hessian_condition_number < self.CONDITION_THRESHOLD

    @property
    def is_identified(self) -> bool:
        """No near-flat direction in the log-likelihood."""
        return self.min_eigenvalue > self.EIGENVALUE_THRESHOLD

    @property
    def gradient_ok(self) -> bool:
        return self.gradient_norm < self.GRADIENT_THRESHOLD

    @property
    def acceptable(self) -> bool:
        return (self.converged and
                self.is_well_conditioned and
                self.is_identified and
                self.gradient_ok)

    def summary(self) -> str:
        status = "PASS" if self.acceptable else "FAIL"
        lines = [
            f"Convergence Status: {status}",
            f"  Converged: {self.converged}",
            f"  Iterations: {self.iterations}",
            f"  Final LL: {self.final_ll:.4f}",
            f"  Gradient norm: {self.gradient_norm:.2e} {'OK' if self.gradient_ok else 'HIGH'}",
            f"  Condition number: {self.hessian_condition_number:.2e} {'OK' if self.is_well_conditioned else 'HIGH'}",
            f"  Min eigenvalue: {self.min_eigenvalue:.2e} {'OK' if self.is_identified else 'NEAR-ZERO'}",
        ]
        if self.problematic_params:
            lines.append(f"  Problematic params: {', '.join(self.problematic_params)}")
        if self.optimization_message:
            lines.append(f"  Message: {self.optimization_message}")
        return "\n".join(lines)


def projected_gradient(gradient: np.ndarray,
                       x: np.ndarray,
                       lower: np.ndarray,
                       upper: np.ndarray,
                       atol: float = 1e-8) -> np.ndarray:
    """
    Gradient with components removed where a bound is active and the
    descent direction points out of the box.
    """
    gradient = np.array(gradient, dtype=float)
    at_lower = np.isfinite(lower) & (x - lower <= atol)
    at_upper = np.isfinite(upper) & (upper - x <= atol)
    gradient[at_lower & (gradient > 0)] = 0.0
    gradient[at_upper & (gradient < 0)] = 0.0
    return gradient


class ConvergenceChecker:
    """
    Check convergence quality of a fitted model.

    Example:
        >>> checker = ConvergenceChecker()
        >>> diagnostics = checker.full_diagnostics(fit)
        >>> print(diagnostics.summary())
    """

    def __init__(self,
                 gradient_tol: float = 1e-3,
                 condition_tol: float = 1e8,
                 eigenvalue_tol: float = 1e-8):
        """
        Initialize convergence checker.

        Args:
            gradient_tol: Maximum acceptable projected gradient norm
            condition_tol: Maximum acceptable Hessian condition number
            eigenvalue_tol: Minimum acceptable Hessian eigenvalue
        """
        self.gradient_tol = gradient_tol
        self.condition_tol = condition_tol
        self.eigenvalue_tol = eigenvalue_tol

    def check_gradient(self, fit) -> Tuple[bool, float]:
        """
        Verify the projected gradient is near zero at the solution.

        Returns:
            Tuple of (is_ok, gradient_norm)
        """
        gradient = getattr(fit.optimizer_result, 'jac', None)
        if gradient is None:
            return True, 0.0
        x = fit.theta.to_numpy()
        grad = projected_gradient(np.asarray(gradient), x, fit.lower, fit.upper)
        gradient_norm = float(np.linalg.norm(grad))
        return gradient_norm < self.gradient_tol, gradient_norm

    def check_hessian(self, hessian: Optional[np.ndarray]) -> Tuple[bool, float, float, float]:
        """
        Eigenvalue analysis of the Hessian of the negative log-likelihood.

        Returns:
            Tuple of (is_psd, min_eigenvalue, max_abs_eigenvalue, condition_number)
        """
        if hessian is None or np.isnan(hessian).any():
            return False, np.nan, np.nan, np.inf

        eigenvalues = np.linalg.eigvalsh(np.asarray(hessian))
        min_eigenvalue = float(np.min(eigenvalues))
        max_eigenvalue = float(np.max(np.abs(eigenvalues)))
        condition_number = max_eigenvalue / min_eigenvalue if min_eigenvalue > 0 else np.inf
        return min_eigenvalue > -1e-10, min_eigenvalue, max_eigenvalue, condition_number

    def check_identification(self, hessian: Optional[np.ndarray],
                             labels: List[str]) -> Tuple[bool, List[str]]:
        """
        Parameters loading on the flattest direction of the likelihood.

        Returns:
            Tuple of (is_identified, problematic_parameters)
        """
        if hessian is None or np.isnan(hessian).any():
            return False, []

        eigenvalues, eigenvectors = np.linalg.eigh(np.asarray(hessian))
        if np.min(eigenvalues) >= self.eigenvalue_tol:
            return True, []

        weights = eigenvectors[:, np.argmin(eigenvalues)]
        problematic = [name for name, w in zip(labels, weights) if abs(w) > 0.1]
        return False, problematic

    def full_diagnostics(self, fit) -> ConvergenceDiagnostics:
        """
        Run all checks on a FitResult.

        The Hessian checks need a fit with ``estimate_var=True``.
        """
        result = fit.optimizer_result
        _, gradient_norm = self.check_gradient(fit)
        _, min_eig, max_eig, condition_number = self.check_hessian(fit.hessian)
        _, problematic = self.check_identification(fit.hessian, list(fit.theta.index))

        diagnostics = ConvergenceDiagnostics(
            converged=fit.converged,
            iterations=int(getattr(result, 'nit', 0)),
            final_ll=-float(result.fun),
            gradient_norm=gradient_norm,
            hessian_condition_number=condition_number,
            min_eigenvalue=min_eig,
            max_eigenvalue=max_eig,
            problematic_params=problematic,
            optimization_message=str(getattr(result, 'message', '')),
        )
        diagnostics.GRADIENT_THRESHOLD = self.gradient_tol
        diagnostics.CONDITION_THRESHOLD = self.condition_tol
        diagnostics.EIGENVALUE_THRESHOLD = self.eigenvalue_tol
        return diagnostics

    def print_diagnostics(self, diagnostics: ConvergenceDiagnostics,
                          model_name: str = "") -> None:
        """Print formatted diagnostics."""
        print("\n" + "=" * 60)
        if model_name:
            print(f"CONVERGENCE DIAGNOSTICS: {model_name}")
        else:
            print("CONVERGENCE DIAGNOSTICS")
        print("=" * 60)
        print(diagnostics.summary())
        print("=" * 60)


def generate_convergence_table(diagnostics_dict: Dict[str, ConvergenceDiagnostics],
                               output_path: Path = None) -> pd.DataFrame:
    """
    Convergence summary table for several fits.

    Args:
        diagnostics_dict: Dict mapping fit name to diagnostics
        output_path: Optional path to save CSV

    Returns:
        DataFrame with convergence statistics
    """
    records = []
    for name, diag in diagnostics_dict.items():
        records.append({
            'Model': name,
            'Converged': diag.converged,
            'Iterations': diag.iterations,
            'Final LL': diag.final_ll,
            'Gradient Norm': diag.gradient_norm,
            'Condition Number': diag.hessian_condition_number,
            'Min Eigenvalue': diag.min_eigenvalue,
            'Identified': diag.is_identified,
            'Well-Conditioned': diag.is_well_conditioned,
            'Acceptable': diag.acceptable,
        })

    df = pd.DataFrame(records)

    if output_path:
        df.to_csv(output_path, index=False)

    return df
