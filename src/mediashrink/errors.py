"""
Exception types for mediashrink.

Transient filesystem failures stay plain ``OSError`` and are handled by
:class:`mediashrink.retry.RetryPolicy`. Encoder failures are reported as
values (see :class:`mediashrink.supervisor.EncodeResult`), so only the
conditions below are raised.
"""


class MediaShrinkError(Exception):
    """Base class for all mediashrink errors."""


class ProbeError(MediaShrinkError):
    """Raised when ffprobe cannot be run or exits with an error."""


class DurationUnavailableError(ProbeError):
    """
    Raised when no duration can be extracted from a probe result.

    Stream duration, container duration and the raw ``Duration:`` banner are
    all tried first. The file is skipped for the run and not retried.
    """


class HaltRequested(MediaShrinkError):
    """Raised when a failure occurs and the run is configured to halt on error."""


class LibraryRefreshError(MediaShrinkError):
    """Raised when the media library manager rejects a refresh command."""
