"""
Media rehosting: download from expiring source URLs into object storage.
"""

from ingestion.media.delay import DelaySetting
from ingestion.media.pipeline import MediaPipeline
from ingestion.media.storage import ObjectStorage
from ingestion.media.tracker import ProblematicEntityTracker

__all__ = [
    "DelaySetting",
    "MediaPipeline",
    "ObjectStorage",
    "ProblematicEntityTracker",
]
