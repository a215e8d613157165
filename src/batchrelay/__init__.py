from .aggregator import AdmissionItem as AdmissionItem
from .aggregator import Aggregator as Aggregator
from .app import Application as Application
from .ingestion import IngestionResponse as IngestionResponse
from .ingestion import Ingestor as Ingestor
from .settings import Settings as Settings
from .status import BatchState as BatchState
from .status import RequestState as RequestState

__all__ = [
    "AdmissionItem",
    "Aggregator",
    "Application",
    "BatchState",
    "IngestionResponse",
    "Ingestor",
    "RequestState",
    "Settings",
]
