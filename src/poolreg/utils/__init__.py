"""Utils module for poolreg."""
from .logging_config import (
    setup_logging,
    get_logger,
    JsonFormatter,
    EstimationLogger,
    configure_warnings
)
