"""Error taxonomy for the skin scan inference core."""


class SkinScanError(Exception):
    """Base class for every error raised by the inference core."""


class InvalidImageError(SkinScanError):
    """Input image cannot be decoded or has degenerate dimensions."""


class ModelLoadError(SkinScanError):
    """Model artifact fetch, parse or warm-up failed. Loading may be retried."""


class ModelNotReadyError(SkinScanError):
    """Inference attempted before the model finished loading."""


class UnknownClassError(SkinScanError, KeyError):
    """Class id is not part of the lesion catalog."""
