#!/usr/bin/env python3
"""
Restore system for the AMD rcraid driver SDK.

This module copies the first-ever backups back over the patched SDK files
and removes build artifacts left in the source directory.
"""

import logging
from pathlib import Path
from typing import List
from dataclasses import dataclass, field
from enum import Enum

from ..utils.file_utils import atomic_copy, remove_matching
from .patch_engine import PatchTarget


# Build outputs of the kbuild run in the SDK source directory
BUILD_ARTIFACT_PATTERNS = [
    '*.o',
    '*.ko',
    '.*.cmd',
    '.*.d',
    '*.mod',
    '*.mod.c',
    'Module.symvers',
    'Modules.symvers',
    'Module.markers',
    'modules.order',
    '.tmp_versions',
]


class RestoreStatus(Enum):
    """Status of a restore operation."""
    RESTORED = "restored"
    NO_BACKUP = "no_backup"
    FAILED = "failed"


@dataclass
class RestoreResult:
    """Result of restoring one target."""
    status: RestoreStatus
    file_path: str
    message: str


@dataclass
class RestoreReport:
    """Result of a restore run."""
    results: List[RestoreResult] = field(default_factory=list)
    removed_artifacts: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.status != RestoreStatus.FAILED for r in self.results)

    @property
    def restored_count(self) -> int:
        return sum(1 for r in self.results if r.status == RestoreStatus.RESTORED)


class PatchRollback:
    """
    Restores SDK files from their backups.
    
    The backup is the only authoritative original: restoring always copies
    backup over file and never re-derives the original from the patched text.
    """
    
    def __init__(self, src_dir: str = None):
        """
        Initialize the restore system.
        
        Args:
            src_dir: SDK source directory to clean of build artifacts (optional)
        """
        self.src_dir = Path(src_dir) if src_dir else None
        self.logger = logging.getLogger(__name__)
    
    def restore(self, targets: List[PatchTarget], clean: bool = True) -> RestoreReport:
        """
        Restore every target that has a backup.
        
        Args:
            targets: Targets to restore
            clean: Also remove build artifacts from the source directory
            
        Returns:
            RestoreReport object
        """
        report = RestoreReport()
        
        for target in targets:
            report.results.append(self.restore_target(target))
        
        if clean and self.src_dir:
            report.removed_artifacts = self.clean_build_artifacts()
        
        return report
    
    def restore_target(self, target: PatchTarget) -> RestoreResult:
        """Copy a target's backup over the target."""
        if not target.has_backup:
            self.logger.warning(f"No backup found for {target.file_path.name}")
            return RestoreResult(
                status=RestoreStatus.NO_BACKUP,
                file_path=str(target.file_path),
                message="No backup found"
            )
        
        try:
            atomic_copy(str(target.backup_path), str(target.file_path))
        except OSError as e:
            self.logger.error(f"Failed to restore {target.file_path}: {e}")
            return RestoreResult(
                status=RestoreStatus.FAILED,
                file_path=str(target.file_path),
                message=f"Restore failed: {e}"
            )
        
        self.logger.info(f"Restored {target.file_path.name} from {target.backup_path.name}")
        return RestoreResult(
            status=RestoreStatus.RESTORED,
            file_path=str(target.file_path),
            message=f"Restored from {target.backup_path.name}"
        )
    
    def clean_build_artifacts(self) -> List[str]:
        """Remove kbuild outputs from the source directory."""
        if not self.src_dir or not self.src_dir.is_dir():
            return []
        
        removed = remove_matching(str(self.src_dir), BUILD_ARTIFACT_PATTERNS)
        
        if removed:
            self.logger.info(f"Removed {len(removed)} build artifacts from {self.src_dir}")
        return removed
