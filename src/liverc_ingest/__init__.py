"""
LiveRC Ingestion Package.
"""

from .config import validate_configuration
from .ingestion.http_client import LiveRcClient
from .services.importer import LiveRcImportService
from .services.summary import LiveRcSummaryImporter

__version__ = "0.1.0"

__all__ = [
    "LiveRcClient",
    "LiveRcImportService",
    "LiveRcSummaryImporter",
    "validate_configuration",
]
