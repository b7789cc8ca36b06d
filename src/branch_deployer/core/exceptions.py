"""Custom exceptions for Branch Deployer."""

from typing import Optional


class DeployerError(Exception):
    """Base exception for all deployer errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TargetRootError(DeployerError):
    """The deployment target root is missing or unusable."""
    pass


class ConfigurationError(DeployerError):
    """Bad or missing middleware configuration, or an unknown handler."""
    pass


class RepositoryError(DeployerError):
    """A repository operation (init, remote, pull, submodules, listing) failed."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message, code)
        self.returncode = returncode
        self.stderr = stderr


class MiddlewareError(DeployerError):
    """A middleware handler reported failure."""
    pass


class PostSwapError(DeployerError):
    """An after-swap callback failed after the new version went live."""
    pass


class StateStoreError(DeployerError):
    """The branch state file could not be written."""
    pass
