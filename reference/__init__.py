"""
Reference imagery — where the "known" image comes from

- StreetViewService: Google Street View metadata + image client
- StaticReferenceProvider: fixed local image (offline runs, tests)
- ReferenceImageProvider: the protocol MatchPipeline depends on
"""
from .provider import ReferenceImageProvider, StaticReferenceProvider
from .streetview import StreetViewService

__all__ = ["ReferenceImageProvider", "StaticReferenceProvider", "StreetViewService"]
