#!/usr/bin/env python3
"""
Settings manager for the rcraid build tooling.
Holds defaults for driver identity, SDK layout and system paths, optionally
overlaid from a JSON file.
"""

import json
from pathlib import Path
from typing import Dict, Optional


class ManagerSettings:
    """Driver manager configuration settings."""
    
    def __init__(self, config_file: Optional[str] = None):
        self.settings = self._load_default_settings()
        if config_file:
            self.load_from_file(config_file)
            
    def _load_default_settings(self) -> Dict:
        """Load default settings."""
        return {
            'driver_name': 'rcraid',
            'driver_version': '9.3.3',
            'sdk_dir': 'driver_sdk',
            'src_subdir': 'src',
            'cert_dir': None,
            'backup_suffix': '.orig',
            'modules_root': '/lib/modules',
            'dkms_tree': '/var/lib/dkms',
            'dkms_source_root': '/usr/src',
            'src_root': '/usr/src',
            'os_release_file': '/etc/os-release',
            'redhat_release_file': '/etc/redhat-release',
            'proc_modules': '/proc/modules',
            'modules_load_dir': '/etc/modules-load.d',
            'modprobe_dir': '/etc/modprobe.d',
            'signing_hash': 'sha512',
            'key_validity_days': 3650,
        }
        
    def load_from_file(self, config_file: str) -> None:
        """Load settings from JSON file."""
        config_path = Path(config_file)
        if config_path.exists():
            with open(config_path, 'r') as f:
                file_settings = json.load(f)
                self.settings.update(file_settings)
                
    def save_to_file(self, config_file: str) -> None:
        """Save current settings to JSON file."""
        with open(config_file, 'w') as f:
            json.dump(self.settings, f, indent=2)
            
    def get(self, key: str, default=None):
        """Get a setting value."""
        return self.settings.get(key, default)
        
    def set(self, key: str, value) -> None:
        """Set a setting value."""
        self.settings[key] = value

    @property
    def sdk_dir(self) -> Path:
        return Path(self.get('sdk_dir'))

    @property
    def src_dir(self) -> Path:
        return self.sdk_dir / self.get('src_subdir')

    @property
    def cert_dir(self) -> Path:
        cert_dir = self.get('cert_dir')
        return Path(cert_dir) if cert_dir else self.sdk_dir / 'certs'

    @property
    def dkms_source_dir(self) -> Path:
        """Source directory DKMS builds from, e.g. /usr/src/rcraid-9.3.3."""
        return Path(self.get('dkms_source_root')) / f"{self.get('driver_name')}-{self.get('driver_version')}"
