from __future__ import annotations


class JobServiceError(Exception):
    """Base class for every error raised by the jobservice controller."""


class ConfigNotReadyError(JobServiceError):
    """Reported by probes until the configuration template has been loaded once."""


class ConfigStoreError(JobServiceError):
    """Raised by the configuration store when a lookup cannot be answered."""


class TemplateWatchError(JobServiceError):
    """Raised when the template file cannot be watched."""


class TemplateReloadError(JobServiceError):
    """Wraps a failure of the reload handler for a template change."""


class ProbeNameError(ValueError, JobServiceError):
    """Raised by the probe registry for empty or duplicate check names."""


class BootstrapError(JobServiceError):
    """A controller bootstrap step failed; ``step`` names the failed step."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class ConfigResolutionError(BootstrapError):
    pass


class ProbeRegistrationError(BootstrapError):
    pass


class WatchSetupError(BootstrapError):
    pass


CONFIG_NOT_READY = ConfigNotReadyError("configuration template not loaded yet")
