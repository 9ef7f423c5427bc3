"""Capture-to-description pipeline.

A timer produces capture records, a rate-limited queue describes them, a binder routes
results back by record id, and an offline buffer holds requests until connectivity returns.
"""

from narrator.pipeline.binder import ResultBinder
from narrator.pipeline.offline import Connectivity, OfflineBuffer
from narrator.pipeline.queue import DescriptionOutcome, DescriptionQueue
from narrator.pipeline.scheduler import CaptureScheduler

__all__ = [
    "CaptureScheduler",
    "Connectivity",
    "DescriptionOutcome",
    "DescriptionQueue",
    "OfflineBuffer",
    "ResultBinder",
]
