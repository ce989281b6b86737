# -------------------------------------------------------------- #
# Recorder Errors
# -------------------------------------------------------------- #


class RecorderError(Exception):
    """Base class for all recorder errors."""


class ConfigError(RecorderError):
    """Raised when an environment variable holds an invalid value."""

    def __init__(self, variable: str, message: str):
        super().__init__(f"{variable}: {message}")
        self.variable = variable


class SessionRegistryError(RecorderError):
    """Raised when a second session would be registered for the same participant."""


class EncoderError(RecorderError):
    """Raised when the encoder subprocess cannot be spawned."""
