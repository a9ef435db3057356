"""
Configuration and environment detection for the rcraid build tooling.
"""

from .environment import VersionDetector, EnvironmentDescriptor, DistributionFamily
from .settings import ManagerSettings

__all__ = ['VersionDetector', 'EnvironmentDescriptor', 'DistributionFamily', 'ManagerSettings']
