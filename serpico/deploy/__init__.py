"""
Script execution and file deployment for serpico.
"""

from .deployer import Deployer, DeploymentResult

__all__ = [
    "Deployer",
    "DeploymentResult",
]
