"""
State verification for the rcraid driver workflow.

This module provides read-only inspection of patch, build, signature,
install, load and DKMS state, plus module signature detection for plain
and compressed modules.
"""

from .module_signature import is_module_signed, detect_compression, Compression
from .state_inspector import StateInspector, SystemStatus, ModuleLocation, ModuleSource, ModuleMatch

__all__ = [
    'StateInspector',
    'SystemStatus',
    'ModuleLocation',
    'ModuleSource',
    'ModuleMatch',
    'is_module_signed',
    'detect_compression',
    'Compression'
]
