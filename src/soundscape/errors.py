"""Exception types raised by the soundscape pipeline."""


class ConfigError(ValueError):
    """Configuration rejected at startup."""


class AudioLoadError(RuntimeError):
    """Audio file missing, unsupported or corrupt."""


class PipelineError(RuntimeError):
    """Terminal failure inside a running pipeline."""
