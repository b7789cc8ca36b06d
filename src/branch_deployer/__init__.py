"""Branch Deployer - deploys every branch of a repository into its own target directory."""

__version__ = "0.1.0"

from branch_deployer.core.config import Settings
from branch_deployer.core.models import BranchState, ChangeSet, DeployResult
from branch_deployer.deploy.deployer import Deployer

__all__ = ["Settings", "BranchState", "ChangeSet", "DeployResult", "Deployer", "__version__"]
