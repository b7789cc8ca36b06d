"""Version-control access used by the deployer."""

from .gateway import GitGateway, ProgressCallback, RepositoryGateway

__all__ = ["GitGateway", "ProgressCallback", "RepositoryGateway"]
