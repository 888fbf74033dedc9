# Exception Types


class PatchError(Exception):
    """
    Base exception for failures during a patching run.

    The ``kind`` attribute identifies the failure category so callers
    can tell configuration, precondition, network and installation
    problems apart once the error has been flattened into the log.
    """

    kind: str = "patch"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(PatchError):
    """Exception raised for invalid or unreadable configuration."""

    kind = "configuration"


class PreconditionError(PatchError):
    """Exception raised when the environment is unfit for patching."""

    kind = "precondition"


class NetworkError(PatchError):
    """Exception raised for failures fetching the offline scan catalog."""

    kind = "network"


class InstallationError(PatchError):
    """Exception raised when downloading or installing updates fails."""

    kind = "installation"


class AgentError(PatchError):
    """Exception raised for errors reported by the Windows Update Agent."""

    kind = "agent"

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)
