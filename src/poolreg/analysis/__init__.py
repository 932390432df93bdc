"""Analysis module for poolreg."""
from .odds_ratio import (
    OddsRatioResult,
    logistic_odds_ratio,
    gdfa_odds_ratio
)
