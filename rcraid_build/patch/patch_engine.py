#!/usr/bin/env python3
"""
Patch Application Engine for the AMD rcraid driver SDK.

This module applies the version-gated source transformations to the SDK
files with backup-once, atomic replacement and post-write verification.
"""

import subprocess
import tempfile
import logging
from pathlib import Path
from typing import List, Optional, Set, Tuple
from dataclasses import dataclass, field
from enum import Enum

from ..config.environment import EnvironmentDescriptor
from ..utils.file_utils import atomic_write_text, backup_file_once, backup_path_for, read_text
from .transformations import SOURCE_FILES, TARGET_FILES, Transformation, transformations_for


class TransformationStatus(Enum):
    """Outcome of one transformation on one target."""
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    WOULD_APPLY = "would_apply"
    FAILED = "failed"
    SKIPPED = "skipped"


class PatchErrorKind(Enum):
    """Kinds of fatal per-target patch errors."""
    TARGET_MISSING = "target_missing"
    TRANSFORM_FAILED = "transform_failed"
    VERIFICATION_FAILED = "verification_failed"
    WRITE_FAILED = "write_failed"


@dataclass
class PatchError:
    """Fatal error that stopped the remaining transformations of a target."""
    kind: PatchErrorKind
    file_path: str
    transformation_id: Optional[str] = None
    message: str = ""

    def __str__(self) -> str:
        where = f"{self.transformation_id} on {self.file_path}" if self.transformation_id else self.file_path
        return f"{self.kind.value}: {where}: {self.message}"


@dataclass
class TransformationOutcome:
    """Per-transformation result recorded in a target report."""
    transformation_id: str
    status: TransformationStatus
    method: Optional[str] = None
    message: str = ""


@dataclass
class PatchTarget:
    """A vendor SDK file that may be transformed."""
    file_path: Path
    backup_suffix: str = ".orig"

    def __post_init__(self):
        self.file_path = Path(self.file_path)

    @property
    def backup_path(self) -> Path:
        return backup_path_for(str(self.file_path), self.backup_suffix)

    @property
    def has_backup(self) -> bool:
        return self.backup_path.exists()

    def exists(self) -> bool:
        return self.file_path.is_file()

    def read(self) -> str:
        return read_text(str(self.file_path))

    def applied_markers(self, transformations: List[Transformation]) -> Set[str]:
        """Ids of the given transformations whose detection holds on the current content."""
        if not self.exists():
            return set()
        content = self.read()
        return {t.id for t in transformations if t.is_applied(content)}


@dataclass
class TargetReport:
    """Result of patching a single target."""
    target: PatchTarget
    outcomes: List[TransformationOutcome] = field(default_factory=list)
    backup_created: bool = False
    warnings: List[str] = field(default_factory=list)
    error: Optional[PatchError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def applied_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TransformationStatus.APPLIED)


@dataclass
class PatchReport:
    """Aggregated result of a patch run over several targets."""
    targets: List[TargetReport] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(report.success for report in self.targets)

    @property
    def applied_count(self) -> int:
        return sum(report.applied_count for report in self.targets)

    @property
    def errors(self) -> List[PatchError]:
        return [report.error for report in self.targets if report.error is not None]


class PatchEngine:
    """
    Engine for applying SDK source transformations idempotently.
    
    For every target the applicable transformations run in declared order.
    A transformation whose detection already holds is skipped. Otherwise the
    structural hunk is tried, with the content-anchored substitution as
    fallback. A target is written only if all of its transformations
    succeed: the first-ever original is backed up, the new content is
    written atomically and detection is re-checked on the written file.
    """
    
    def __init__(self, sdk_dir: str, backup_suffix: str = ".orig", patch_command: str = "patch",
                 source_subdir: str = "src"):
        """
        Initialize the patch engine.
        
        Args:
            sdk_dir: Path to the vendor driver SDK root
            source_subdir: Directory of the C sources below sdk_dir ("" for a flat copy)
            backup_suffix: Suffix of the backup sibling of each target
            patch_command: Executable used for structural hunks
        """
        self.sdk_dir = Path(sdk_dir)
        self.backup_suffix = backup_suffix
        self.patch_command = patch_command
        self.source_subdir = source_subdir
        self.logger = logging.getLogger(__name__)
    
    @classmethod
    def from_settings(cls, settings, sdk_dir: str = None, source_subdir: str = None) -> 'PatchEngine':
        return cls(
            str(sdk_dir or settings.sdk_dir),
            backup_suffix=settings.get('backup_suffix'),
            source_subdir=settings.get('src_subdir') if source_subdir is None else source_subdir,
        )
    
    def targets(self) -> List[PatchTarget]:
        """PatchTargets for the fixed set of SDK files."""
        return [PatchTarget(self.resolve(name), self.backup_suffix) for name in TARGET_FILES]
    
    def transformations_for_target(self, target: PatchTarget, env: EnvironmentDescriptor) -> List[Transformation]:
        """Applicable transformations for one target, in declared order."""
        return [t for t in transformations_for(env) if t.target == target.file_path.name]
    
    def apply_all(self, targets: List[PatchTarget], env: EnvironmentDescriptor,
                  dry_run: bool = False) -> PatchReport:
        """
        Apply every applicable transformation to every target.
        
        A failing target does not stop the others, and earlier successful
        targets are not rolled back.
        
        Args:
            targets: Targets to patch
            env: Detected environment selecting the transformation set
            dry_run: If True, compute outcomes in memory without writing
            
        Returns:
            PatchReport object
        """
        report = PatchReport()
        
        self.logger.info(
            f"Applying {'EL10' if env.is_el10 else 'EL9'} transformations "
            f"(major release {env.major_version}, kernel {env.kernel_release})"
        )
        
        for target in targets:
            target_report = self.apply_target(target, self.transformations_for_target(target, env), dry_run)
            report.targets.append(target_report)
            
            if target_report.error:
                self.logger.error(f"Patching failed: {target_report.error}")
        
        return report
    
    def apply_target(self, target: PatchTarget, transformations: List[Transformation],
                     dry_run: bool = False) -> TargetReport:
        """
        Apply an ordered list of transformations to one target.
        
        The new content is built in memory and detection is checked after
        every transformation. The target is backed up and written once, only
        when every transformation succeeded, and detection is re-checked on
        the written file.
        
        Args:
            target: Target to patch
            transformations: Transformations for this target, in order
            dry_run: If True, do not back up or write
            
        Returns:
            TargetReport object
        """
        report = TargetReport(target=target)
        
        if not target.exists():
            report.error = PatchError(
                kind=PatchErrorKind.TARGET_MISSING,
                file_path=str(target.file_path),
                message="Source file not found"
            )
            return report
        
        original = target.read()
        content = original
        staged: List[Tuple[Transformation, TransformationOutcome]] = []
        
        for transformation in transformations:
            if report.error:
                report.outcomes.append(TransformationOutcome(
                    transformation.id, TransformationStatus.SKIPPED,
                    message="Skipped after earlier failure"
                ))
                continue
            
            if transformation.is_applied(content):
                self.logger.info(f"{transformation.id}: already applied to {target.file_path.name}")
                report.outcomes.append(TransformationOutcome(
                    transformation.id, TransformationStatus.ALREADY_APPLIED,
                    message="Already applied"
                ))
                continue
            
            new_content, method = self._transform(transformation, target, content)
            
            if new_content is None:
                self._fail(report, transformation, PatchErrorKind.TRANSFORM_FAILED,
                           "Neither the structural hunk nor the substitution anchor matched")
                continue
            
            if not transformation.is_applied(new_content):
                self._fail(report, transformation, PatchErrorKind.VERIFICATION_FAILED,
                           "Transformed content does not satisfy the detection check", method)
                continue
            
            content = new_content
            outcome = TransformationOutcome(
                transformation.id,
                TransformationStatus.WOULD_APPLY if dry_run else TransformationStatus.APPLIED,
                method=method,
                message=transformation.description
            )
            report.outcomes.append(outcome)
            staged.append((transformation, outcome))
        
        if report.error:
            for transformation, outcome in staged:
                outcome.status = TransformationStatus.SKIPPED
                outcome.message = f"Not written, {report.error.transformation_id} failed"
            return report
        
        if dry_run or not staged:
            return report
        
        try:
            self._ensure_backup(target, original, report)
            atomic_write_text(str(target.file_path), content)
            written = target.read()
        except OSError as e:
            report.error = PatchError(
                kind=PatchErrorKind.WRITE_FAILED,
                file_path=str(target.file_path),
                message=str(e)
            )
            for transformation, outcome in staged:
                outcome.status = TransformationStatus.FAILED
                outcome.message = str(e)
            return report
        
        for transformation, outcome in staged:
            if not transformation.is_applied(written):
                report.error = PatchError(
                    kind=PatchErrorKind.VERIFICATION_FAILED,
                    file_path=str(target.file_path),
                    transformation_id=transformation.id,
                    message="Written content does not satisfy the detection check"
                )
                outcome.status = TransformationStatus.FAILED
                outcome.message = report.error.message
                break
            self.logger.info(f"{transformation.id}: applied to {target.file_path.name} ({outcome.method})")
        
        return report
    
    def _fail(self, report: TargetReport, transformation: Transformation, kind: PatchErrorKind,
              message: str, method: Optional[str] = None):
        report.error = PatchError(
            kind=kind,
            file_path=str(report.target.file_path),
            transformation_id=transformation.id,
            message=message
        )
        report.outcomes.append(TransformationOutcome(
            transformation.id, TransformationStatus.FAILED, method=method, message=message
        ))
    
    def resolve(self, file_name: str) -> Path:
        """Location of an SDK file in this tree."""
        if file_name in SOURCE_FILES and self.source_subdir:
            return self.sdk_dir / self.source_subdir / file_name
        return self.sdk_dir / file_name
    
    def _ensure_backup(self, target: PatchTarget, current_content: str, report: TargetReport):
        """Back up the target before its first-ever mutation."""
        if target.has_backup:
            if read_text(str(target.backup_path)) != current_content:
                warning = (
                    f"Backup {target.backup_path.name} differs from the current file; "
                    "keeping the existing backup as the original"
                )
                self.logger.warning(warning)
                report.warnings.append(warning)
            return
        
        backup_path, created = backup_file_once(str(target.file_path), self.backup_suffix)
        if created:
            self.logger.info(f"Backed up {target.file_path.name} to {backup_path.name}")
            report.backup_created = True
    
    def _transform(self, transformation: Transformation, target: PatchTarget,
                   content: str) -> Tuple[Optional[str], Optional[str]]:
        """Try the structural hunk first, then the anchored substitution."""
        if transformation.hunk:
            patched = self._apply_hunk(transformation.hunk, content, target.file_path.name)
            if patched is not None:
                return patched, "structural"
            self.logger.warning(
                f"{transformation.id}: hunk did not apply to {target.file_path.name}, "
                "trying substitution"
            )
        
        substituted = transformation.substitute(content)
        if substituted is None:
            return None, None
        return substituted, "substitution"
    
    def _apply_hunk(self, hunk: str, content: str, file_name: str) -> Optional[str]:
        """
        Apply a unified diff hunk to content using patch(1) on a scratch copy.
        
        Returns:
            Patched content, or None if the hunk does not apply
        """
        with tempfile.TemporaryDirectory(prefix="rcraid-hunk-") as work_dir:
            source = Path(work_dir) / file_name
            patch_file = Path(work_dir) / f"{file_name}.patch"
            output = Path(work_dir) / f"{file_name}.out"
            
            atomic_write_text(str(source), content)
            patch_file.write_text(hunk)
            
            cmd = [
                self.patch_command,
                '--batch',
                '--forward',
                '--silent',
                '--fuzz=0',
                '--reject-file=-',
                f'--output={output}',
                str(source),
                str(patch_file),
            ]
            
            try:
                result = subprocess.run(cmd, capture_output=True, text=True)
            except FileNotFoundError:
                self.logger.warning(f"{self.patch_command} not found, structural hunks unavailable")
                return None
            
            if result.returncode != 0 or not output.exists():
                self.logger.debug(f"patch rejected hunk for {file_name}: {result.stdout}{result.stderr}")
                return None
            
            return read_text(str(output))
