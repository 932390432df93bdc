"""
Structured Logging for Pooled-Exposure Estimation
=================================================

Provides consistent logging across the poolreg estimation framework.

Usage:
    from poolreg.utils.logging_config import get_logger, EstimationLogger

    # Simple logging
    logger = get_logger(__name__)
    logger.info("Starting estimation")

    # Structured estimation logging
    est_log = EstimationLogger("logreg-processing")
    est_log.start()
    est_log.converged(nll=612.3, k=7, aic=1238.6)

Author: poolreg developers
"""

import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_style: str = "standard"
) -> None:
    """
    Configure logging for the poolreg package.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for log output
        format_style: "standard", "detailed", or "json"
    """
    formats = {
        "standard": "%(asctime)s | %(levelname)-8s | %(message)s",
        "detailed": "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
    }

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if format_style == "json":
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(formats.get(format_style, formats["standard"]),
                              datefmt="%Y-%m-%d %H:%M:%S")
        )
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(formats["detailed"], datefmt="%Y-%m-%d %H:%M:%S")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra_data"):
            log_data["data"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


# =============================================================================
# ESTIMATION LOGGER
# =============================================================================

class EstimationLogger:
    """
    Structured logger for maximum-likelihood fitting progress.

    Console output is controlled by ``verbose``; every event is also sent
    to the ``poolreg.estimation.<model_name>`` logger.

    Example:
        logger = EstimationLogger("gdfa-both")
        logger.start()
        logger.retry(jitter_sd=0.01)
        logger.converged(nll=410.2, k=5, aic=830.4)
    """

    def __init__(self, model_name: str, verbose: bool = False):
        self.model_name = model_name
        self.verbose = verbose
        self.start_time: Optional[datetime] = None
        self._logger = get_logger(f"poolreg.estimation.{model_name}")

    def _print(self, message: str) -> None:
        """Print if verbose mode is on."""
        if self.verbose:
            print(message)

    def _elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return (datetime.now() - self.start_time).total_seconds()

    def start(self, n_pools: Optional[int] = None, n_params: Optional[int] = None) -> None:
        """Log estimation start."""
        self.start_time = datetime.now()
        self._print(f"\n{'='*60}")
        self._print(f"Estimating: {self.model_name}")
        if n_pools is not None:
            self._print(f"  N pools: {n_pools} | N parameters: {n_params}")
        self._print(f"{'='*60}")
        self._logger.info(f"Started estimation: {self.model_name}")

    def retry(self, jitter_sd: float) -> None:
        """Log a jittered restart after non-convergence."""
        self._print(f"  Non-convergence; retrying with jittered start (sd={jitter_sd})")
        self._logger.info(f"Retrying {self.model_name} with jitter sd={jitter_sd}")

    def converged(self, nll: float, k: int, aic: float) -> None:
        """Log successful convergence."""
        elapsed = self._elapsed()
        self._print(f"\n  CONVERGED in {elapsed:.1f}s")
        self._print(f"  -LL: {nll:.3f} | K: {k} | AIC: {aic:.3f}")
        self._logger.info(
            f"Converged: {self.model_name} | nll={nll:.3f} | K={k} | "
            f"AIC={aic:.3f} | time={elapsed:.1f}s"
        )

    def failed(self, reason: str) -> None:
        """Log estimation failure (non-fatal: best result is still returned)."""
        elapsed = self._elapsed()
        self._print(f"\n  NOT CONVERGED after {elapsed:.1f}s: {reason}")
        self._logger.warning(f"Not converged: {self.model_name} | {reason}")

    def parameters(self, estimates: Dict[str, float],
                   std_errs: Optional[Dict[str, float]] = None) -> None:
        """Log estimated parameters."""
        self._print("\n  Parameters:")
        for name, value in estimates.items():
            se = std_errs.get(name, float('nan')) if std_errs else float('nan')
            self._print(f"    {name:20s}: {value:10.4f} (SE: {se:8.4f})")

        self._logger.info(f"Parameters estimated: {list(estimates.keys())}")


# =============================================================================
# WARNING CONFIGURATION
# =============================================================================

def configure_warnings(debug_mode: bool = False) -> None:
    """
    Configure warning filters for likelihood maximization.

    Args:
        debug_mode: If True, show all warnings. If False, suppress the
            floating-point noise numpy emits while the optimizer probes
            extreme parameter values.
    """
    import warnings

    if debug_mode:
        warnings.filterwarnings('default')
        logging.info("Debug mode: All warnings enabled")
    else:
        warnings.filterwarnings('ignore', message='.*overflow.*')
        warnings.filterwarnings('ignore', message='.*divide by zero.*')
        warnings.filterwarnings('ignore', message='.*invalid value.*')
