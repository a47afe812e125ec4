# shadowbox/core/exceptions.py
from pathlib import Path
from typing import Union


class StartupError(Exception):
    """Base for every failure that must stop the process before it serves."""


class ValidationError(StartupError):
    """Raised when an environment parameter is missing or malformed."""
    def __init__(self, parameter: str, message: str):
        self.parameter = parameter
        super().__init__(message)


class ConfigLoadError(StartupError):
    """Raised when a persisted document cannot be read or parsed."""
    def __init__(self, path: Union[str, Path], cause: Exception):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Failed to read config at {self.path}: {cause}")


class DependencyConstructionError(StartupError):
    """Raised when the access-key repository fails to build."""
    def __init__(self, dependency: str, cause: Exception):
        self.dependency = dependency
        self.cause = cause
        super().__init__(f"Failed to construct {dependency}: {cause}")


class ScraperLaunchError(StartupError):
    """Raised when the scraping subprocess cannot be spawned."""
    def __init__(self, binary: str, cause: Exception):
        self.binary = binary
        self.cause = cause
        super().__init__(f"Failed to launch scraper '{binary}': {cause}")


class InvalidStartupTransitionError(StartupError):
    """Raised when the startup sequence is driven out of order."""
    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid startup transition: "
            f"Cannot move from '{from_state}' to '{to_state}'."
        )


class ListenError(StartupError):
    """Raised when an HTTP listener cannot bind its port."""
    def __init__(self, port: int, exit_code: object):
        self.port = port
        self.exit_code = exit_code
        super().__init__(f"Could not listen on port {port} (server exit code {exit_code})")


class TransientTaskError(Exception):
    """A background failure after startup. Logged, never fatal."""
    def __init__(self, task_name: str, cause: BaseException):
        self.task_name = task_name
        self.cause = cause
        super().__init__(f"Task '{task_name}' failed: {cause}")
