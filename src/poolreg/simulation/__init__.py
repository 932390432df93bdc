"""Simulation module for poolreg."""
from .simulate_pools import (
    LogisticSimulationConfig,
    GammaSimulationConfig,
    SimulatedPools,
    simulate_logistic_pools,
    simulate_gdfa_pools
)
