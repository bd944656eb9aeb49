"""
SQLHA Deployer - two-node SQL Server high availability on Azure
"""

__version__ = "0.1.0"

from .core import SqlHaDeployer, build_settings
from .errors import DeployerError

__all__ = ["SqlHaDeployer", "DeployerError", "build_settings"]
