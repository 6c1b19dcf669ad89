"""
Production Studio Pipeline

In-process orchestration for generated media:
  Store         single-writer asset state with a monotonic lifecycle
  Generation    concurrent fan-out of image / image-to-video jobs
  Derivation    videos owned by the image they were made from, with reroll
  Slideshows    dense 1..k slide ordering with reorder and insert
  Captions      bounded-retry caption burn on finished slide videos
  Sessions      debounced snapshot persistence
"""

from .models import Asset, AssetKind, AssetStatus, GenerationRequest, SessionSnapshot
from .studio import ProductionStudio

__all__ = [
    "Asset",
    "AssetKind",
    "AssetStatus",
    "GenerationRequest",
    "SessionSnapshot",
    "ProductionStudio",
]
