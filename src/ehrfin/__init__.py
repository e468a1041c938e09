"""EHRFin: incremental aggregation engine for clinical and financial records.

Raw patient, transaction and procedure rows are deduplicated and normalized,
then kept rolled up (revenue by provider, cost outliers, moving averages,
treatment histories) without recomputing from scratch on every update.
"""

__version__ = "0.1.0"
__author__ = "EHRFin Team"

from .core.pipeline import EHRFinPipeline
from .core.config import Config

__all__ = ["EHRFinPipeline", "Config"]
