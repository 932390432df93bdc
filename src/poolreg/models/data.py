"""
Pooled Observation Data and Stratification
==========================================

Containers for poolwise observations and the stratifier that splits them
by how much error-contaminated information each pool carries.

Each pool has a size g (1 = unpooled individual), an outcome y (1 if every
member is a case, 0 if every member is a control), one or more surrogate
exposure measurements Xtilde and, optionally, covariates.

Strata:
    exact       - X observed without error, closed-form likelihood
    replicated  - k >= 2 measurements, X integrated out using all of them
    single      - one measurement, X integrated out using that value

Which pools go where is a deterministic function of (errors, g, k):

    errors       | exact  | replicated | single
    -------------+--------+------------+--------
    neither      | all    |            |
    processing   | g == 1 |            | g > 1
    measurement  |        | k > 1      | k == 1
    both         |        | k > 1      | k == 1

Author: poolreg developers
"""

import numpy as np
import pandas as pd
from typing import List, Optional, Sequence, Union
from dataclasses import dataclass, field

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


ERROR_REGIMES = ('neither', 'processing', 'measurement', 'both')

CovariateInput = Union[None, np.ndarray, pd.DataFrame, pd.Series, Sequence]


# =============================================================================
# POOL DATA
# =============================================================================

@dataclass
class PoolData:
    """
    Validated poolwise observations.

    Attributes:
        g: Pool sizes, shape (n,)
        y: Poolwise outcomes coded 0/1, shape (n,)
        xtilde: One 1-D array of measurements per pool
        k: Replicate counts, shape (n,)
        covariates: Poolwise (summed) covariate rows, shape (n, p). Used by
            the logistic family.
        member_covariates: Per-pool matrices with one row per member, or
            None. Used by the gamma discriminant function family.
        covariate_names: Names of the p covariates
    """
    g: np.ndarray
    y: np.ndarray
    xtilde: List[np.ndarray]
    k: np.ndarray
    covariates: np.ndarray
    member_covariates: Optional[List[np.ndarray]] = None
    covariate_names: List[str] = field(default_factory=list)

    @property
    def n(self) -> int:
        return len(self.y)

    @property
    def n_covariates(self) -> int:
        return len(self.covariate_names)

    @property
    def is_pool(self) -> np.ndarray:
        """Indicator I(g > 1)."""
        return (self.g > 1).astype(int)

    @property
    def has_replicates(self) -> bool:
        return bool(np.any(self.k > 1))

    def subset(self, index: np.ndarray, name: str,
               qg: Optional[np.ndarray] = None) -> 'StratumSlice':
        """Slice every per-pool array by ``index``."""
        index = np.asarray(index, dtype=int)
        members = None
        if self.member_covariates is not None:
            members = [self.member_covariates[i] for i in index]
        return StratumSlice(
            name=name,
            index=index,
            g=self.g[index],
            y=self.y[index],
            k=self.k[index],
            xtilde=[self.xtilde[i] for i in index],
            covariates=self.covariates[index, :],
            member_covariates=members,
            qg=qg[index] if qg is not None else None,
        )


@dataclass
class StratumSlice:
    """Aligned per-pool arrays for one stratum."""
    name: str
    index: np.ndarray
    g: np.ndarray
    y: np.ndarray
    k: np.ndarray
    xtilde: List[np.ndarray]
    covariates: np.ndarray
    member_covariates: Optional[List[np.ndarray]] = None
    qg: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.index)

    @property
    def is_empty(self) -> bool:
        return len(self.index) == 0

    @property
    def is_pool(self) -> np.ndarray:
        return (self.g > 1).astype(int)

    def first_measurements(self) -> np.ndarray:
        """Scalar exposure per pool (only meaningful when every k == 1)."""
        return np.array([x[0] for x in self.xtilde], dtype=float)


@dataclass
class Strata:
    """Disjoint exact / replicated / single-surrogate partition of the pools."""
    exact: StratumSlice
    replicated: StratumSlice
    single: StratumSlice
    errors: str

    def __iter__(self):
        return iter((self.exact, self.replicated, self.single))

    def counts(self) -> dict:
        return {s.name: len(s) for s in self}


# =============================================================================
# INPUT PREPARATION
# =============================================================================

def _normalize_xtilde(xtilde) -> List[np.ndarray]:
    """Turn scalar-per-pool or list-of-replicates input into a list of arrays."""
    if isinstance(xtilde, pd.Series):
        xtilde = xtilde.tolist()

    if isinstance(xtilde, (list, tuple)):
        out = []
        for i, value in enumerate(xtilde):
            arr = np.atleast_1d(np.asarray(value, dtype=float)).ravel()
            if arr.size == 0:
                raise ValueError(f"Pool {i} has no Xtilde measurements.")
            out.append(arr)
        return out

    arr = np.asarray(xtilde, dtype=float)
    if arr.ndim != 1:
        raise ValueError(
            "xtilde should be a 1-D numeric array or a list of per-pool "
            "measurement vectors."
        )
    return [np.array([v]) for v in arr]


def _default_names(n_cols: int, name: Optional[str] = None) -> List[str]:
    if n_cols == 1:
        return [name if name else 'c']
    return [f'c{j + 1}' for j in range(n_cols)]


def _pool_covariates(c: CovariateInput, n: int):
    """Poolwise covariate matrix and names (logistic family)."""
    if c is None:
        return np.zeros((n, 0)), []

    if isinstance(c, pd.DataFrame):
        return c.to_numpy(dtype=float), [str(col) for col in c.columns]
    if isinstance(c, pd.Series):
        return c.to_numpy(dtype=float).reshape(-1, 1), _default_names(1, c.name)

    arr = np.asarray(c, dtype=float)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise ValueError("c should be a vector or a matrix with one row per pool.")
    return arr, _default_names(arr.shape[1])


def _member_covariates(c: Sequence, n: int):
    """Per-member covariate matrices and names (gamma discriminant family)."""
    if not isinstance(c, (list, tuple)):
        raise ValueError(
            "c should be a list with one matrix of member covariates per pool."
        )
    if len(c) != n:
        raise ValueError(f"c has {len(c)} elements but there are {n} pools.")

    names = None
    members = []
    for i, block in enumerate(c):
        if isinstance(block, pd.DataFrame):
            if names is None:
                names = [str(col) for col in block.columns]
            block = block.to_numpy(dtype=float)
        arr = np.asarray(block, dtype=float)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2 or arr.shape[0] == 0:
            raise ValueError(f"Covariates for pool {i} should be a non-empty matrix.")
        members.append(arr)

    n_cols = {m.shape[1] for m in members}
    if len(n_cols) != 1:
        raise ValueError("Every pool's covariate matrix needs the same number of columns.")
    n_cols = n_cols.pop()
    if names is None:
        names = _default_names(n_cols)
    return members, names


def prepare_pools(g, y, xtilde, c: CovariateInput = None,
                  member_level: bool = False,
                  positive_exposure: bool = False) -> PoolData:
    """
    Validate and assemble poolwise inputs.

    Args:
        g: Pool sizes. May be None when ``member_level`` is True, in which
            case sizes are taken from the covariate matrices' row counts.
        y: Poolwise outcomes (0 = all controls, 1 = all cases)
        xtilde: Numeric vector, or list of numeric vectors when some pools
            have replicate measurements
        c: Covariates. Poolwise matrix/vector/DataFrame, or (``member_level``)
            a list of per-member matrices.
        member_level: Whether ``c`` holds member-level covariate matrices
        positive_exposure: Require strictly positive measurements

    Returns:
        PoolData

    Raises:
        ValueError: On any malformed input
    """
    y_arr = np.asarray(y, dtype=float).ravel()
    n = len(y_arr)
    if n == 0:
        raise ValueError("No pools supplied.")
    if not np.all(np.isin(y_arr, (0.0, 1.0))):
        raise ValueError("y should be coded 0 (control pools) and 1 (case pools).")

    members = None
    if member_level and c is not None:
        members, names = _member_covariates(c, n)
        covariates = np.vstack([m.sum(axis=0) for m in members])
        if g is None:
            g = [m.shape[0] for m in members]
    else:
        covariates, names = _pool_covariates(c, n)

    if g is None:
        raise ValueError("Pool sizes g are required when no member covariates are given.")

    g_arr = np.asarray(g, dtype=float).ravel()
    if len(g_arr) != n:
        raise ValueError(f"g has length {len(g_arr)} but y has length {n}.")
    if np.any(g_arr < 1) or np.any(g_arr != np.round(g_arr)):
        raise ValueError("Pool sizes g should be positive integers.")
    g_arr = g_arr.astype(int)

    if covariates.shape[0] != n:
        raise ValueError(f"c has {covariates.shape[0]} rows but there are {n} pools.")
    if members is not None:
        sizes = np.array([m.shape[0] for m in members])
        if np.any(sizes != g_arr):
            bad = int(np.flatnonzero(sizes != g_arr)[0])
            raise ValueError(
                f"Pool {bad} has g = {g_arr[bad]} but {sizes[bad]} rows of member covariates."
            )

    xt = _normalize_xtilde(xtilde)
    if len(xt) != n:
        raise ValueError(f"xtilde has {len(xt)} pools but y has length {n}.")
    for i, values in enumerate(xt):
        if not np.all(np.isfinite(values)):
            raise ValueError(f"Pool {i} has non-finite Xtilde values.")
        if positive_exposure and np.any(values <= 0):
            raise ValueError(
                f"Pool {i} has non-positive Xtilde values; lognormal errors "
                "require positive measurements."
            )
    if not np.all(np.isfinite(covariates)):
        raise ValueError("Covariates contain non-finite values.")

    k = np.array([len(values) for values in xt], dtype=int)

    return PoolData(
        g=g_arr,
        y=y_arr.astype(int),
        xtilde=xt,
        k=k,
        covariates=covariates,
        member_covariates=members,
        covariate_names=names,
    )


# =============================================================================
# CASE-CONTROL OFFSETS
# =============================================================================

def compute_offsets(g: np.ndarray, y: np.ndarray,
                    prev: Optional[float] = None,
                    samp_y1y0: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Weinberg-Umbach offsets correcting the intercept for case-control sampling.

    For pools of size g with n1g case pools and n0g control pools:

        qg = log(n1g / n0g) - g * log(n1 / n0)                 (default)
        qg = log(n1g / n0g) - g * log(prev / (1 - prev))       (prevalence known)
        qg = log(n1g / n0g) - g * log(n1 / n0) - g * log(s0 / s1)

    where n1, n0 are the total numbers of case and control individuals and
    (s1, s0) the sampling probabilities for cases and controls.

    Args:
        g: Pool sizes
        y: Poolwise outcomes
        prev: Disease prevalence
        samp_y1y0: Sampling probabilities (cases, controls)

    Returns:
        Offset per pool, shape (n,)
    """
    if prev is not None and samp_y1y0 is not None:
        raise ValueError("Specify at most one of 'prev' and 'samp_y1y0'.")

    g = np.asarray(g)
    y = np.asarray(y)

    n_1 = g[y == 1].sum()
    n_0 = g[y == 0].sum()
    if n_1 == 0 or n_0 == 0:
        raise ValueError("Offsets need at least one case pool and one control pool.")

    qg = np.empty(len(y), dtype=float)
    for g_val in np.unique(g):
        locs = g == g_val
        n_case_pools = np.sum(locs & (y == 1))
        n_control_pools = np.sum(locs & (y == 0))
        if n_case_pools == 0 or n_control_pools == 0:
            raise ValueError(
                f"Pools of size {g_val} need both case and control pools to "
                f"compute offsets (found {n_case_pools} case, {n_control_pools} control)."
            )

        base = np.log(n_case_pools / n_control_pools)
        if prev is not None:
            qg[locs] = base - g_val * np.log(prev / (1 - prev))
        elif samp_y1y0 is not None:
            qg[locs] = (base - g_val * np.log(n_1 / n_0)
                        - g_val * np.log(samp_y1y0[1] / samp_y1y0[0]))
        else:
            qg[locs] = base - g_val * np.log(n_1 / n_0)

    return qg


# =============================================================================
# STRATIFIER
# =============================================================================

def stratify(pools: PoolData, errors: str,
             qg: Optional[np.ndarray] = None) -> Strata:
    """
    Partition pools into exact / replicated / single-surrogate strata.

    Args:
        pools: Validated pool data
        errors: 'neither', 'processing', 'measurement' or 'both'
        qg: Optional per-pool offsets, sliced alongside the data

    Returns:
        Strata covering every pool exactly once

    Raises:
        ValueError: If the regime is unknown or a pool cannot be classified
    """
    if errors not in ERROR_REGIMES:
        raise ValueError(
            f"errors should be one of {ERROR_REGIMES}, got {errors!r}."
        )

    n = pools.n
    all_idx = np.arange(n)
    replicated_mask = pools.k > 1

    if errors in ('neither', 'processing') and replicated_mask.any():
        bad = int(np.flatnonzero(replicated_mask)[0])
        hint = "Use errors='measurement' or 'both', or pass one measurement per pool."
        if np.all(pools.xtilde[bad] == pools.xtilde[bad][0]):
            hint = ("Its replicates are identical; collapse each pool's replicates "
                    "to a single value before fitting.")
        raise ValueError(
            f"Pool {bad} has {pools.k[bad]} replicate measurements, but errors="
            f"{errors!r} assumes no measurement error, so replicates would have "
            f"to be identical. {hint}"
        )

    if errors == 'neither':
        exact_mask = np.ones(n, dtype=bool)
        rep_mask = np.zeros(n, dtype=bool)
    elif errors == 'processing':
        exact_mask = pools.g == 1
        rep_mask = np.zeros(n, dtype=bool)
    else:
        exact_mask = np.zeros(n, dtype=bool)
        rep_mask = replicated_mask
    single_mask = ~exact_mask & ~rep_mask

    strata = Strata(
        exact=pools.subset(all_idx[exact_mask], 'exact', qg),
        replicated=pools.subset(all_idx[rep_mask], 'replicated', qg),
        single=pools.subset(all_idx[single_mask], 'single', qg),
        errors=errors,
    )
    logger.debug(f"Stratified {n} pools under errors={errors!r}: {strata.counts()}")
    return strata
