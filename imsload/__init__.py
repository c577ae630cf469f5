"""
imsload - synthetic load generation and SLA verification for the IMS back office.

Weighted workflow mixes (locate, short-sell, position, inventory, data ingestion)
driven at a constant or staged arrival rate over async HTTP/2, with per-operation
percentile thresholds, endurance drift tracking and HTML/JSON/JUnit reports.
"""

from .exceptions import ImsLoadAuthError, ImsLoadConfigError, ImsLoadError, ImsLoadRunnerError

__all__ = [
    "__version__",
    "ImsLoadAuthError",
    "ImsLoadConfigError",
    "ImsLoadError",
    "ImsLoadRunnerError",
]

__version__ = "1.0.0"
