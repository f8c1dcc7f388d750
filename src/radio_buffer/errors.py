"""Exception types raised by the stream source, the player sink and the buffer."""


class RadioBufferError(Exception):
    """Base class for radio-buffer errors."""


class SourceError(RadioBufferError):
    """The upstream audio source failed."""


class SourceConnectError(SourceError):
    """Connection could not be established or returned a bad status."""


class SourceReadError(SourceError):
    """The stream broke while reading."""


class SourceTimeoutError(SourceError):
    """No data arrived within the read timeout."""


class SinkError(RadioBufferError):
    """The player process failed."""


class SinkSpawnError(SinkError):
    """The player process could not be started."""


class SinkWriteError(SinkError):
    """Writing audio to the player failed."""


class BufferInUseError(RadioBufferError):
    """Another process holds the lock on the buffer file."""
