"""Error taxonomy shared by the engine layer and the session controller."""
from __future__ import annotations


class DevHelperError(Exception):
    """Base class for every error raised by devhelper."""


class NotFound(DevHelperError, LookupError):
    """A referenced context entry does not exist."""


class EngineNotReady(DevHelperError):
    """The inference engine was used before initialization completed."""


class EngineInitFailed(DevHelperError):
    """The inference engine could not be initialized."""


class RequestFailed(DevHelperError):
    """An engine call or its stream failed mid-flight."""
