"""Exception hierarchy for the photo-to-labels pipeline.

User cancellation of a picker is not an error and has no exception here; see
``snaplabel.acquisition.CANCELLED``.
"""

from __future__ import annotations


class SnapLabelError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(SnapLabelError):
    """Image bytes are not a well-formed image of the supported format."""


class MalformedGridError(SnapLabelError):
    """A pixel grid violates its sample-count invariant. Indicates a bug upstream."""


class RuntimeInitError(SnapLabelError):
    """The numeric execution backend could not be initialized. Not retryable."""


class ModelLoadError(SnapLabelError):
    """Model weights or labels could not be loaded. Retryable."""


class InferenceError(SnapLabelError):
    """Classification failed: engine not ready, tensor shape mismatch, or runtime fault."""


class AcquisitionError(SnapLabelError):
    """The platform picker faulted or returned an unusable result."""


class FetchError(SnapLabelError):
    """Bytes behind an image reference could not be fetched."""
