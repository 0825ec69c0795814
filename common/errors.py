from __future__ import annotations

"""
Failure conditions raised inside the matching stages.

MatchPipeline.match() converts every one of these into a failed MatchResult;
callers of the individual stages (detector, estimator, provider adapters) see
them as ordinary exceptions.
"""

from common.types import FailureReason


class MatchError(Exception):
    """Base class; `reason` is the FailureReason the pipeline reports."""

    reason: FailureReason = FailureReason.NO_HOMOGRAPHY_CONSENSUS

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.reason.value)
        self.detail = detail


class InvalidImage(MatchError, ValueError):
    reason = FailureReason.INVALID_IMAGE


class NoReferenceImage(MatchError):
    reason = FailureReason.NO_REFERENCE_IMAGE


class ImageFetchError(MatchError):
    reason = FailureReason.IMAGE_FETCH_ERROR


class InsufficientCorrespondences(MatchError, ValueError):
    reason = FailureReason.INSUFFICIENT_CORRESPONDENCES


class NoHomographyConsensus(MatchError):
    reason = FailureReason.NO_HOMOGRAPHY_CONSENSUS


class PipelineCancelled(MatchError):
    reason = FailureReason.CANCELLED
