"""
Error-Regime Parameterization
=============================

Maps an error assumption onto a fixed, ordered parameter layout.

The error-variance terms a regime needs are looked up in a table keyed by
(errors, nondiff_pe, nondiff_me); flags that a regime does not use are
normalized to None before lookup. Adding a regime is a table edit.

Layout order:
    logistic:  beta_0, beta_<x>, beta_<c...>, alpha_0, alpha_<c...> | sigsq_x.c, <error variances>
    gdfa:      gamma_0, gamma_<c...>                                | b1, b0, <error variances>

Everything left of '|' is a "non-variance" parameter, everything right of
it a "variance" parameter; default start values and bounds are broadcast
from one scalar per block.

Author: poolreg developers
"""

import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass

from .data import ERROR_REGIMES


# =============================================================================
# REGIME TABLE
# =============================================================================

_ERROR_VARIANCE_LABELS: Dict[Tuple, Tuple[str, ...]] = {
    ('neither', None, None): (),
    ('processing', True, None): ('sigsq_p',),
    ('processing', False, None): ('sigsq_p1', 'sigsq_p0'),
    ('measurement', None, True): ('sigsq_m',),
    ('measurement', None, False): ('sigsq_m1', 'sigsq_m0'),
    ('both', True, True): ('sigsq_p', 'sigsq_m'),
    ('both', False, True): ('sigsq_p1', 'sigsq_p0', 'sigsq_m'),
    ('both', True, False): ('sigsq_p', 'sigsq_m1', 'sigsq_m0'),
    ('both', False, False): ('sigsq_p1', 'sigsq_p0', 'sigsq_m1', 'sigsq_m0'),
}

DEFAULT_START_NONVAR_VAR = (0.01, 1.0)
DEFAULT_LOWER_NONVAR_VAR = (-np.inf, 1e-4)
DEFAULT_UPPER_NONVAR_VAR = (np.inf, np.inf)


def regime_key(errors: str, nondiff_pe: bool = True,
               nondiff_me: bool = True) -> Tuple:
    """Normalize (errors, flags) to a key of the regime table."""
    if errors not in ERROR_REGIMES:
        raise ValueError(
            f"errors should be one of {ERROR_REGIMES}, got {errors!r}."
        )
    for name, flag in (('nondiff_pe', nondiff_pe), ('nondiff_me', nondiff_me)):
        if not isinstance(flag, (bool, np.bool_)):
            raise ValueError(f"{name} should be True or False.")

    pe = bool(nondiff_pe) if errors in ('processing', 'both') else None
    me = bool(nondiff_me) if errors in ('measurement', 'both') else None
    return (errors, pe, me)


def error_variance_labels(errors: str, nondiff_pe: bool = True,
                          nondiff_me: bool = True) -> Tuple[str, ...]:
    """Ordered error-variance labels for a regime."""
    return _ERROR_VARIANCE_LABELS[regime_key(errors, nondiff_pe, nondiff_me)]


# =============================================================================
# LAYOUT
# =============================================================================

def check_pair(pair: Sequence[float], name: str) -> Tuple[float, float]:
    values = np.asarray(pair, dtype=float).ravel()
    if values.shape != (2,):
        raise ValueError(f"{name} should be a numeric sequence of length 2.")
    return float(values[0]), float(values[1])


@dataclass(frozen=True)
class ParameterLayout:
    """
    Ordered parameter labels for one (family, regime, flags) combination.

    Attributes:
        labels: Parameter names in vector order
        n_nonvar: Number of leading non-variance parameters
        errors: Error regime
        family: 'logistic' or 'gdfa'
    """
    labels: Tuple[str, ...]
    n_nonvar: int
    errors: str
    family: str

    @property
    def size(self) -> int:
        return len(self.labels)

    @property
    def n_var(self) -> int:
        return self.size - self.n_nonvar

    def position(self, label: str) -> int:
        return self.labels.index(label)

    def positions(self, prefix: str) -> List[int]:
        """Positions of labels starting with ``prefix`` (e.g. 'beta_')."""
        return [i for i, label in enumerate(self.labels) if label.startswith(prefix)]

    def error_variance_position(self, kind: str, outcome: int) -> Optional[int]:
        """
        Position of the processing ('p') or measurement ('m') error variance
        that applies to pools with the given outcome, or None if the regime
        has no such error.
        """
        for label in (f'sigsq_{kind}{int(outcome)}', f'sigsq_{kind}'):
            if label in self.labels:
                return self.labels.index(label)
        return None

    def broadcast(self, nonvar_var: Sequence[float], name: str = 'values') -> np.ndarray:
        """Fill a full-length vector from one non-variance and one variance scalar."""
        nonvar, var = check_pair(nonvar_var, name)
        return np.concatenate([np.full(self.n_nonvar, nonvar), np.full(self.n_var, var)])

    def check_vector(self, vector: Sequence[float], name: str) -> np.ndarray:
        values = np.asarray(vector, dtype=float).ravel()
        if values.shape != (self.size,):
            raise ValueError(
                f"{name} has length {values.size}, but the {self.family} model "
                f"with errors={self.errors!r} has {self.size} parameters: "
                f"{list(self.labels)}."
            )
        return values


def logreg_layout(errors: str,
                  nondiff_pe: bool = True,
                  nondiff_me: bool = True,
                  x_name: str = 'x',
                  covariate_names: Sequence[str] = ()) -> ParameterLayout:
    """Parameter layout for poolwise logistic regression."""
    covariate_names = list(covariate_names)
    betas = [f'beta_{name}' for name in ['0', x_name] + covariate_names]
    alphas = [f'alpha_{name}' for name in ['0'] + covariate_names]
    variances = ['sigsq_x.c'] + list(error_variance_labels(errors, nondiff_pe, nondiff_me))
    return ParameterLayout(
        labels=tuple(betas + alphas + variances),
        n_nonvar=len(betas) + len(alphas),
        errors=errors,
        family='logistic',
    )


def gdfa_layout(errors: str, covariate_names: Sequence[str] = ()) -> ParameterLayout:
    """Parameter layout for the gamma discriminant function approach."""
    gammas = [f'gamma_{name}' for name in ['0'] + list(covariate_names)]
    variances = ['b1', 'b0'] + list(error_variance_labels(errors))
    return ParameterLayout(
        labels=tuple(gammas + variances),
        n_nonvar=len(gammas),
        errors=errors,
        family='gdfa',
    )
