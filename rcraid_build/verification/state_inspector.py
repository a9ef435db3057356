#!/usr/bin/env python3
"""
System state inspection for the rcraid driver workflow.

Every query is read-only and derived from external evidence on each call:
source file content, module files and symlinks, the running module list,
and the DKMS and mokutil status commands. Absence of evidence means "not
done"; no query raises.
"""

import os
import shutil
import logging
from pathlib import Path
from typing import List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum

from ..config.environment import EnvironmentDescriptor
from ..config.settings import ManagerSettings
from ..patch.patch_engine import PatchEngine, PatchTarget
from ..patch.transformations import MK_CERTS, get_transformation
from ..utils.system import run_command
from .module_signature import is_module_signed


REQUIRED_TOOLS = ['gcc', 'make', 'openssl', 'mokutil']


class ModuleSource(Enum):
    """Install tree a module was found in."""
    DIRECT = "direct"
    DKMS = "dkms"
    WEAK_MODULES = "weak_modules"


class ModuleMatch(Enum):
    """Whether an installed module was built for the running kernel."""
    EXACT = "exact"
    COMPATIBLE = "compatible"


@dataclass
class ModuleLocation:
    """An installed module file and, for symlinks, what it resolves to."""
    path: Path
    resolved_path: Path
    source: ModuleSource
    kernel_release: Optional[str]
    target_kernel_release: Optional[str]

    @property
    def is_symlink(self) -> bool:
        return self.path != self.resolved_path

    @property
    def match(self) -> ModuleMatch:
        if self.is_symlink and self.target_kernel_release != self.kernel_release:
            return ModuleMatch.COMPATIBLE
        return ModuleMatch.EXACT


@dataclass
class SystemStatus:
    """Snapshot of every derivable workflow state, with evidence paths."""
    environment: EnvironmentDescriptor
    secure_boot: bool
    kernel_devel_installed: bool
    sdk_found: bool
    patches_applied: bool
    missing_transformations: List[str] = field(default_factory=list)
    mk_certs_patched: bool = False
    built_module: Optional[Path] = None
    built_module_signed: bool = False
    installed_module: Optional[ModuleLocation] = None
    installed_module_signed: bool = False
    module_loaded: bool = False
    dkms_available: bool = False
    dkms_configured: bool = False


class StateInspector:
    """
    Read-only queries over patch, build, signing, install and DKMS state.
    """
    
    def __init__(self, settings: ManagerSettings, env: EnvironmentDescriptor,
                 engine: Optional[PatchEngine] = None):
        """
        Initialize the inspector.
        
        Args:
            settings: Paths and driver identity
            env: Detected environment
            engine: Patch engine used for target discovery (optional)
        """
        self.settings = settings
        self.env = env
        self.engine = engine or PatchEngine.from_settings(settings)
        self.driver_name = settings.get('driver_name')
        self.modules_root = Path(settings.get('modules_root'))
        self.dkms_tree = Path(settings.get('dkms_tree'))
        self.logger = logging.getLogger(__name__)
    
    # Patches
    
    def missing_transformations(self, targets: Optional[List[PatchTarget]] = None) -> List[str]:
        """Ids of applicable transformations whose detection does not hold."""
        missing = []
        for target in targets if targets is not None else self.engine.targets():
            transformations = self.engine.transformations_for_target(target, self.env)
            applied = target.applied_markers(transformations)
            missing.extend(t.id for t in transformations if t.id not in applied)
        return missing
    
    def patches_applied(self, targets: Optional[List[PatchTarget]] = None) -> bool:
        """True iff every version-applicable transformation is detected."""
        return not self.missing_transformations(targets)
    
    def mk_certs_patched(self) -> bool:
        target = PatchTarget(self.settings.sdk_dir / MK_CERTS, self.settings.get('backup_suffix'))
        return 'mk-certs-marker' in target.applied_markers([get_transformation('mk-certs-marker')])
    
    # Modules
    
    def module_signed(self, module_path: str) -> bool:
        return is_module_signed(str(module_path))
    
    def find_built_module(self) -> Optional[Path]:
        """The module produced by the last build in the SDK source directory."""
        built = self.settings.src_dir / f"{self.driver_name}.ko"
        return built if built.is_file() else None
    
    def installed_module_candidates(self) -> List[Tuple[Path, ModuleSource]]:
        """Candidate install locations for the running kernel, in probe order."""
        name = self.driver_name
        kernel_dir = self.modules_root / self.env.kernel_release
        
        candidates = []
        for relative in [
            f"extra/{name}.ko",
            f"extra/{name}/{name}.ko",
            f"extra/{name}.ko.xz",
            f"extra/{name}/{name}.ko.xz",
            f"updates/{name}.ko",
            f"updates/{name}.ko.xz",
        ]:
            candidates.append((kernel_dir / relative, ModuleSource.DIRECT))
        
        dkms_module_dirs = sorted(
            (self.dkms_tree / name).glob(f"*/{self.env.kernel_release}/*/module")
        )
        for module_dir in dkms_module_dirs:
            candidates.append((module_dir / f"{name}.ko", ModuleSource.DKMS))
            candidates.append((module_dir / f"{name}.ko.xz", ModuleSource.DKMS))
        
        for relative in [
            f"weak-updates/{name}.ko",
            f"weak-updates/{name}.ko.xz",
            f"weak-updates/{name}/{name}.ko",
            f"weak-updates/{name}/{name}.ko.xz",
        ]:
            candidates.append((kernel_dir / relative, ModuleSource.WEAK_MODULES))
        
        return candidates
    
    def find_installed_module(self) -> Optional[ModuleLocation]:
        """
        Find the installed module for the running kernel.
        
        The first existing candidate wins. Symlinks (weak-modules) are
        resolved and the kernel the resolved file belongs to is reported
        separately from the kernel directory the link lives in.
        """
        for path, source in self.installed_module_candidates():
            if not path.is_file():
                continue
            
            resolved = Path(os.path.realpath(path)) if path.is_symlink() else path
            location = ModuleLocation(
                path=path,
                resolved_path=resolved,
                source=source,
                kernel_release=self._kernel_for_path(path),
                target_kernel_release=self._kernel_for_path(resolved),
            )
            self.logger.debug(f"Installed module found: {location}")
            return location
        
        return None
    
    def module_loaded(self) -> bool:
        """Check the running module list for the driver."""
        try:
            with open(self.settings.get('proc_modules'), 'r') as f:
                for line in f:
                    parts = line.split()
                    if parts and parts[0] == self.driver_name:
                        return True
        except OSError as e:
            self.logger.debug(f"Could not read module list: {e}")
        return False
    
    # System
    
    def dkms_available(self) -> bool:
        return shutil.which('dkms') is not None
    
    def dkms_configured(self) -> bool:
        """Check whether DKMS knows the driver."""
        result = run_command(['dkms', 'status'])
        if result.returncode != 0:
            return False
        
        for line in result.stdout.splitlines():
            module = line.split(',')[0].split('/')[0].strip()
            if module == self.driver_name:
                return True
        return False
    
    def secure_boot_enabled(self) -> bool:
        result = run_command(['mokutil', '--sb-state'])
        return result.returncode == 0 and 'SecureBoot enabled' in result.stdout
    
    def kernel_devel_installed(self) -> bool:
        return bool(self.env.kernel_source_dir) and Path(self.env.kernel_source_dir).is_dir()
    
    def setup_problems(self) -> List[str]:
        """Pre-flight checklist; an empty list means ready to build."""
        problems = []
        sdk_dir = self.settings.sdk_dir
        src_dir = self.settings.src_dir
        
        if not sdk_dir.is_dir():
            problems.append(f"Driver SDK directory not found: {sdk_dir}")
        else:
            if not (src_dir / "rc_init.c").is_file():
                problems.append(f"Source files missing in {src_dir}")
            if not (src_dir / "rcblob.x86_64").is_file():
                problems.append("Binary blob missing (rcblob.x86_64)")
        
        if not self.kernel_devel_installed():
            problems.append(f"Kernel headers not installed for {self.env.kernel_release}")
        
        for tool in REQUIRED_TOOLS:
            if shutil.which(tool) is None:
                problems.append(f"Required tool not found: {tool}")
        
        return problems
    
    def collect_status(self) -> SystemStatus:
        """Gather all state queries into one snapshot."""
        built = self.find_built_module()
        installed = self.find_installed_module()
        dkms_available = self.dkms_available()
        missing = self.missing_transformations()
        
        return SystemStatus(
            environment=self.env,
            secure_boot=self.secure_boot_enabled(),
            kernel_devel_installed=self.kernel_devel_installed(),
            sdk_found=self.settings.sdk_dir.is_dir(),
            patches_applied=not missing,
            missing_transformations=missing,
            mk_certs_patched=self.mk_certs_patched(),
            built_module=built,
            built_module_signed=self.module_signed(built) if built else False,
            installed_module=installed,
            installed_module_signed=self.module_signed(installed.path) if installed else False,
            module_loaded=self.module_loaded(),
            dkms_available=dkms_available,
            dkms_configured=self.dkms_configured() if dkms_available else False,
        )
    
    def _kernel_for_path(self, path: Path) -> Optional[str]:
        """Kernel release a module path is filed under, from the tree layout."""
        layouts = ((self.modules_root, 0), (self.dkms_tree, 2))
        for root, index in layouts:
            for base in (root, Path(os.path.realpath(root))):
                try:
                    parts = Path(path).relative_to(base).parts
                except ValueError:
                    continue
                if len(parts) > index + 1:
                    return parts[index]
        return None
