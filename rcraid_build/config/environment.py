#!/usr/bin/env python3
"""
Operating system and kernel version detection.

Builds the immutable EnvironmentDescriptor that selects which source
transformations apply and where the kernel build headers live.
"""

import os
import re
import logging
from pathlib import Path
from typing import Dict, Optional
from dataclasses import dataclass
from enum import Enum


DEFAULT_MAJOR_VERSION = 9

# Distributions rebuilt from RHEL sources
RHEL_DERIVATIVES = {'almalinux', 'rocky', 'centos', 'ol', 'oracle', 'eurolinux', 'navy', 'circle', 'cloudlinux'}


class DistributionFamily(Enum):
    """Distribution family of the running system."""
    RHEL = "rhel"
    DERIVATIVE = "derivative"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """Normalized description of the running OS and kernel."""
    distribution_family: DistributionFamily
    major_version: int
    kernel_release: str
    kernel_series: str
    kernel_source_dir: Optional[str] = None
    os_name: str = "Unknown"
    os_id: str = "unknown"
    os_version_id: str = "unknown"

    @property
    def sign_tool(self) -> Optional[str]:
        """Path of the kernel's sign-file helper, if headers are installed."""
        if not self.kernel_source_dir:
            return None
        return str(Path(self.kernel_source_dir) / "scripts" / "sign-file")

    @property
    def is_el10(self) -> bool:
        return self.major_version >= 10


class VersionDetector:
    """
    Detects distribution, major release and kernel layout.
    
    Detection never fails: missing or malformed release metadata falls back
    to major release 9 with a warning.
    """
    
    def __init__(self, redhat_release_file: str = "/etc/redhat-release",
                 os_release_file: str = "/etc/os-release",
                 src_root: str = "/usr/src",
                 kernel_release: Optional[str] = None):
        """
        Initialize the detector.
        
        Args:
            redhat_release_file: Path of the redhat-release file
            os_release_file: Path of the os-release file
            src_root: Root that holds kernels/ and linux-headers-* trees
            kernel_release: Override for the running kernel release (uname -r)
        """
        self.redhat_release_file = Path(redhat_release_file)
        self.os_release_file = Path(os_release_file)
        self.src_root = Path(src_root)
        self.kernel_release = kernel_release
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, kernel_release: Optional[str] = None) -> 'VersionDetector':
        return cls(
            redhat_release_file=settings.get('redhat_release_file'),
            os_release_file=settings.get('os_release_file'),
            src_root=settings.get('src_root'),
            kernel_release=kernel_release,
        )
    
    def detect(self) -> EnvironmentDescriptor:
        """
        Detect the current environment.
        
        Returns:
            EnvironmentDescriptor for this run
        """
        os_release = self._read_os_release()
        redhat_release = self._read_redhat_release()
        
        kernel_release = self.kernel_release or os.uname().release
        
        descriptor = EnvironmentDescriptor(
            distribution_family=self._detect_family(os_release, redhat_release),
            major_version=self._detect_major_version(os_release, redhat_release),
            kernel_release=kernel_release,
            kernel_series=self._kernel_series(kernel_release),
            kernel_source_dir=self._find_kernel_source_dir(kernel_release),
            os_name=self._os_name(os_release, redhat_release),
            os_id=os_release.get('ID', 'unknown'),
            os_version_id=os_release.get('VERSION_ID', 'unknown'),
        )
        
        self.logger.debug(f"Detected environment: {descriptor}")
        return descriptor
    
    def _read_os_release(self) -> Dict[str, str]:
        """Parse os-release KEY=value pairs, stripping quotes."""
        values = {}
        try:
            with open(self.os_release_file, 'r') as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    key, value = line.split('=', 1)
                    values[key.strip()] = value.strip().strip('"').strip("'")
        except OSError as e:
            self.logger.debug(f"Could not read {self.os_release_file}: {e}")
        return values
    
    def _read_redhat_release(self) -> Optional[str]:
        try:
            return self.redhat_release_file.read_text().strip()
        except OSError:
            return None
    
    def _detect_major_version(self, os_release: Dict[str, str], redhat_release: Optional[str]) -> int:
        """Leading integer of the release, preferring redhat-release."""
        major = None
        
        if redhat_release is not None:
            match = re.search(r'release (\d+)', redhat_release)
            if match:
                major = int(match.group(1))
        if major is None and 'VERSION_ID' in os_release:
            match = re.match(r'(\d+)', os_release['VERSION_ID'])
            if match:
                major = int(match.group(1))
        
        if major is None:
            self.logger.warning(
                f"Could not determine OS major release, defaulting to {DEFAULT_MAJOR_VERSION}"
            )
            return DEFAULT_MAJOR_VERSION
        
        if major < DEFAULT_MAJOR_VERSION:
            self.logger.warning(
                f"OS major release {major} is older than supported, treating as {DEFAULT_MAJOR_VERSION}"
            )
            return DEFAULT_MAJOR_VERSION
        
        return major
    
    def _detect_family(self, os_release: Dict[str, str], redhat_release: Optional[str]) -> DistributionFamily:
        os_id = os_release.get('ID', '').lower()
        id_like = os_release.get('ID_LIKE', '').lower().split()
        
        if os_id == 'rhel':
            return DistributionFamily.RHEL
        if os_id in RHEL_DERIVATIVES or 'rhel' in id_like:
            return DistributionFamily.DERIVATIVE
        if not os_id and redhat_release:
            if redhat_release.startswith('Red Hat Enterprise Linux'):
                return DistributionFamily.RHEL
            return DistributionFamily.DERIVATIVE
        return DistributionFamily.UNKNOWN
    
    def _os_name(self, os_release: Dict[str, str], redhat_release: Optional[str]) -> str:
        if redhat_release:
            return redhat_release
        return os_release.get('PRETTY_NAME', 'Unknown')
    
    def _kernel_series(self, kernel_release: str) -> str:
        """Leading major.minor of the kernel release, e.g. 6.12."""
        match = re.match(r'(\d+\.\d+)', kernel_release)
        return match.group(1) if match else ""
    
    def _find_kernel_source_dir(self, kernel_release: str) -> Optional[str]:
        """Probe the RHEL then the Debian kernel header layouts."""
        candidates = [
            self.src_root / "kernels" / kernel_release,
            self.src_root / f"linux-headers-{kernel_release}",
        ]
        for candidate in candidates:
            if candidate.is_dir():
                return str(candidate)
        return None
