"""Nylo client SDK: pseudonymous identity, cross-domain handoff and batched delivery"""

from .config import SDK_VERSION, SdkConfig, TrackingFeatures, parse_feature_config
from .identity import IdentityManager, generate_session_id, generate_wai_tag
from .pipeline import DeliveryPipeline, PipelineState, compress_batch
from .schema import Identity, TrackingEvent
from .storage import CookieBackend, FileBackend, IdentityStore, MemoryBackend
from .api_client import NyloApiClient
from .tracker import NyloTracker

__version__ = SDK_VERSION

__all__ = [
    "SdkConfig",
    "TrackingFeatures",
    "parse_feature_config",
    "IdentityManager",
    "generate_session_id",
    "generate_wai_tag",
    "DeliveryPipeline",
    "PipelineState",
    "compress_batch",
    "Identity",
    "TrackingEvent",
    "CookieBackend",
    "FileBackend",
    "IdentityStore",
    "MemoryBackend",
    "NyloApiClient",
    "NyloTracker"
]
