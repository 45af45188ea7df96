"""
Generation lifecycle: records, long-running jobs and output ingestion.
"""

from .images import ImageGenerator, ImageResult, VertexImageClient, extract_image
from .ingestion import OutputIngestion, detect_format
from .poller import JobHandle, JobOutcome, JobPoller, JobState, VertexClient, VertexVideoClient, extract_payload
from .records import CompletionResult, GenerationService
from .storage import ObjectStorage, StoredObject
from .workflow import GenerationWorkflow

__all__ = [
    "ImageGenerator",
    "ImageResult",
    "VertexImageClient",
    "extract_image",
    "OutputIngestion",
    "detect_format",
    "JobHandle",
    "JobOutcome",
    "JobPoller",
    "JobState",
    "VertexClient",
    "VertexVideoClient",
    "extract_payload",
    "CompletionResult",
    "GenerationService",
    "ObjectStorage",
    "StoredObject",
    "GenerationWorkflow",
]
