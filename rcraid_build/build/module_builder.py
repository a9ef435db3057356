#!/usr/bin/env python3
"""
Build, signing and installation automation for the rcraid kernel module.

This module sequences the external collaborators (kbuild, sign-file,
openssl, depmod, dracut, dkms, mokutil, modprobe) around the patch engine,
using the state inspector to skip steps that are already complete.
"""

import os
import shutil
import socket
import tempfile
import logging
from pathlib import Path
from typing import List, Optional
from dataclasses import dataclass, field
from enum import Enum

from ..config.environment import EnvironmentDescriptor
from ..config.settings import ManagerSettings
from ..patch.patch_engine import PatchEngine, PatchReport
from ..utils.file_utils import calculate_file_hash, ensure_directory
from ..utils.system import run_command, is_root
from ..verification.module_signature import Compression, compress_module, decompress_module, detect_compression
from ..verification.state_inspector import ModuleMatch, StateInspector

BLOB_NAME = "rcblob.x86_64"
BLOB_LINK = "rcblob.x86_64.o"

SIGNING_KEY = "module_signing_key.priv"
SIGNING_CERT = "module_signing_key.der"

# Files DKMS needs to rebuild the module, looked up in src/ then the SDK root
DKMS_SOURCE_FILES = [
    'build_number.h', 'common_shell', 'install_rh', 'Makefile', 'mk_certs',
    'rc_adapter.h', 'rc_ahci.h', 'rcblob.x86_64', 'rc_config.c',
    'rc_event.c', 'rc.h', 'rc_init.c', 'rc_mem_ops.c', 'rc_msg.c',
    'rc_msg_platform.h', 'rc_pci_ids.h', 'rc_scsi.h', 'rc_srb.h',
    'rc_types_platform.h', 'uninstall_rh', 'version.h',
]


class StepStatus(Enum):
    """Status of an orchestration step."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """Result of an orchestration step."""
    status: StepStatus
    step: str
    message: str
    details: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != StepStatus.FAILED


class ModuleBuilder:
    """Runs the patch, build, sign, install, DKMS and MOK steps."""
    
    def __init__(self, settings: ManagerSettings, env: EnvironmentDescriptor,
                 engine: Optional[PatchEngine] = None, inspector: Optional[StateInspector] = None):
        self.settings = settings
        self.env = env
        self.engine = engine or PatchEngine.from_settings(settings)
        self.inspector = inspector or StateInspector(settings, env, self.engine)
        self.driver_name = settings.get('driver_name')
        self.driver_version = settings.get('driver_version')
        self.src_dir = settings.src_dir
        self.cert_dir = settings.cert_dir
        self.logger = logging.getLogger(__name__)
    
    @property
    def signing_key(self) -> Path:
        return self.cert_dir / SIGNING_KEY
    
    @property
    def signing_cert(self) -> Path:
        return self.cert_dir / SIGNING_CERT
    
    @property
    def built_module_path(self) -> Path:
        return self.src_dir / f"{self.driver_name}.ko"
    
    # Patching
    
    def apply_patches(self, dry_run: bool = False) -> StepResult:
        """Patch the SDK tree and ensure the blob link exists."""
        if not self.settings.sdk_dir.is_dir():
            return self._failed("patch", f"Driver SDK directory not found: {self.settings.sdk_dir}")
        
        report = self.engine.apply_all(self.engine.targets(), self.env, dry_run=dry_run)
        details = self._describe_patch_report(report)
        
        if not report.success:
            return StepResult(StepStatus.FAILED, "patch", "Patching failed", details)
        
        if not dry_run:
            link_result = self.ensure_blob_link()
            if not link_result.ok:
                return link_result
        
        return StepResult(
            StepStatus.SUCCESS, "patch",
            f"{report.applied_count} transformations applied", details
        )
    
    def ensure_blob_link(self, directory: Optional[Path] = None) -> StepResult:
        """kbuild links the vendor blob as an object file; provide the .o name."""
        directory = Path(directory) if directory else self.src_dir
        link = directory / BLOB_LINK
        
        if link.exists() or link.is_symlink():
            return StepResult(StepStatus.SKIPPED, "blob-link", f"{BLOB_LINK} already present")
        
        try:
            os.symlink(BLOB_NAME, link)
        except OSError as e:
            return self._failed("blob-link", f"Could not create {link}: {e}")
        
        self.logger.info(f"Created symlink {BLOB_LINK} -> {BLOB_NAME}")
        return StepResult(StepStatus.SUCCESS, "blob-link", f"Created {BLOB_LINK} -> {BLOB_NAME}")
    
    # Build
    
    def build_module(self) -> StepResult:
        """Compile the patched SDK against the running kernel's headers."""
        if not self.inspector.kernel_devel_installed():
            return self._failed("build", f"Kernel headers not installed for {self.env.kernel_release}")
        
        if not self.inspector.patches_applied():
            self.logger.warning("Patches not applied, applying now")
            patch_result = self.apply_patches()
            if not patch_result.ok:
                return patch_result
        
        link_result = self.ensure_blob_link()
        if not link_result.ok:
            return link_result
        
        build_dir = Path(self.settings.get('modules_root')) / self.env.kernel_release / "build"
        self.logger.info(f"Compiling module for kernel {self.env.kernel_release}")
        result = run_command(['make', '-C', str(build_dir), f"M={self.src_dir}", 'modules'])
        
        if result.returncode != 0 or not self.built_module_path.is_file():
            return self._failed("build", "Build failed", self._tail(result.stderr or result.stdout))
        
        return StepResult(StepStatus.SUCCESS, "build", f"Built {self.built_module_path}")
    
    # Signing
    
    def generate_signing_key(self, force: bool = False) -> StepResult:
        """Create a self-signed X.509 key pair for module signing."""
        if self.signing_cert.is_file() and not force:
            return StepResult(StepStatus.SKIPPED, "keygen", f"Using existing key {self.signing_cert}")
        
        ensure_directory(str(self.cert_dir), mode=0o700)
        for path in (self.signing_cert, self.signing_key):
            if path.exists():
                path.unlink()
        
        result = run_command([
            'openssl', 'req', '-new', '-x509', '-newkey', 'rsa:4096',
            '-keyout', str(self.signing_key),
            '-outform', 'DER',
            '-out', str(self.signing_cert),
            '-nodes', '-days', str(self.settings.get('key_validity_days')),
            '-subj', f"/CN={self.driver_name} module signing key {socket.gethostname()}/",
        ])
        
        if result.returncode != 0 or not self.signing_key.is_file():
            return self._failed("keygen", "Signing key generation failed", self._tail(result.stderr))
        
        os.chmod(self.signing_key, 0o600)
        return StepResult(StepStatus.SUCCESS, "keygen", f"Generated {self.signing_cert}")
    
    def sign_module(self, module_path: Optional[str] = None) -> StepResult:
        """
        Append a signature to a module.
        
        Compressed modules are decompressed to a scratch copy, signed and
        recompressed over the original.
        """
        if not is_root():
            return self._failed("sign", "Signing requires root privileges")
        
        path = Path(module_path) if module_path else self._default_module_to_sign()
        if path is None or not path.is_file():
            return self._failed("sign", "No module found to sign")
        
        if not self.signing_cert.is_file():
            key_result = self.generate_signing_key()
            if not key_result.ok:
                return key_result
        
        sign_tool = self.env.sign_tool
        if not sign_tool or not Path(sign_tool).is_file():
            return self._failed("sign", f"sign-file tool not found at {sign_tool}; install kernel headers")
        
        compression = detect_compression(str(path))
        if compression == Compression.NONE:
            result = self._run_sign_file(sign_tool, path)
        else:
            result = self._sign_compressed(sign_tool, path, compression)
        
        if result.returncode != 0:
            return self._failed("sign", f"Signing {path} failed", self._tail(result.stderr))
        
        if not self.inspector.module_signed(str(path)):
            return self._failed("sign", f"No signature found on {path} after signing")
        
        return StepResult(StepStatus.SUCCESS, "sign", f"Signed {path}")
    
    def sign_installed_module(self) -> StepResult:
        location = self.inspector.find_installed_module()
        if location is None:
            return self._failed("sign", "No installed module found")
        return self.sign_module(str(location.resolved_path))
    
    def enroll_mok_key(self) -> StepResult:
        """Queue the signing certificate for MOK enrollment on next boot."""
        if not is_root():
            return self._failed("enroll", "MOK enrollment requires root privileges")
        
        if not self.signing_cert.is_file():
            return self._failed("enroll", "Signing key not found; generate one first")
        
        test = run_command(['mokutil', '--test-key', str(self.signing_cert)])
        if 'already enrolled' in test.stdout:
            return StepResult(StepStatus.SKIPPED, "enroll", "Key already enrolled")
        
        # mokutil prompts for the one-time enrollment password on the terminal
        result = run_command(['mokutil', '--import', str(self.signing_cert)], capture=False)
        if result.returncode != 0:
            return self._failed("enroll", "MOK enrollment failed", self._tail(result.stderr))
        
        return StepResult(
            StepStatus.SUCCESS, "enroll",
            "Key enrollment queued; reboot and complete it in the MOK manager"
        )
    
    # Installation
    
    def install_module(self) -> StepResult:
        """Copy the built module into the running kernel's extra/ tree."""
        if not is_root():
            return self._failed("install", "Installation requires root privileges")
        
        if not self.built_module_path.is_file():
            return self._failed("install", f"Built module not found at {self.built_module_path}")
        
        try:
            extra_dir = ensure_directory(
                str(Path(self.settings.get('modules_root')) / self.env.kernel_release / "extra")
            )
            shutil.copy2(self.built_module_path, extra_dir / self.built_module_path.name)
        except OSError as e:
            return self._failed("install", f"Could not copy {self.built_module_path.name}: {e}")
        
        result = run_command(['depmod', '-a', self.env.kernel_release])
        if result.returncode != 0:
            return self._failed("install", "depmod failed", self._tail(result.stderr))
        
        self._write_boot_config()
        
        dracut = run_command(['dracut', '-f'])
        if dracut.returncode != 0:
            return self._failed("install", "dracut failed", self._tail(dracut.stderr))
        
        return StepResult(StepStatus.SUCCESS, "install", f"Installed to {extra_dir}")
    
    def setup_dkms(self) -> StepResult:
        """Register a patched copy of the sources with DKMS and build it."""
        if not is_root():
            return self._failed("dkms", "DKMS setup requires root privileges")
        
        if not self.inspector.dkms_available():
            return self._failed("dkms", "dkms is not installed")
        
        if not self.inspector.kernel_devel_installed():
            return self._failed("dkms", f"Kernel headers not installed for {self.env.kernel_release}")
        
        module_spec = ['-m', self.driver_name, '-v', self.driver_version]
        
        if self.inspector.dkms_configured():
            self.logger.info("Removing existing DKMS registration")
            run_command(['dkms', 'remove'] + module_spec + ['--all'])
        
        dkms_dir = self.settings.dkms_source_dir
        if dkms_dir.exists():
            shutil.rmtree(dkms_dir)
        ensure_directory(str(dkms_dir))
        
        copied = []
        for name in DKMS_SOURCE_FILES:
            for candidate in (self.src_dir / name, self.settings.sdk_dir / name):
                if candidate.is_file():
                    shutil.copy2(candidate, dkms_dir / name)
                    copied.append(name)
                    break
        
        self.ensure_blob_link(dkms_dir)
        
        dkms_engine = PatchEngine.from_settings(self.settings, sdk_dir=str(dkms_dir), source_subdir="")
        report = dkms_engine.apply_all(dkms_engine.targets(), self.env)
        details = self._describe_patch_report(report)
        if not report.success:
            return StepResult(StepStatus.FAILED, "dkms", "Patching the DKMS source failed", details)
        
        (dkms_dir / "dkms.conf").write_text(self._dkms_conf())
        
        for action in ('add', 'build', 'install'):
            self.logger.info(f"dkms {action} {self.driver_name}/{self.driver_version}")
            result = run_command(['dkms', action] + module_spec)
            if result.returncode != 0:
                return self._failed("dkms", f"dkms {action} failed", self._tail(result.stderr))
        
        self._write_boot_config()
        
        dracut = run_command(['dracut', '-f'])
        if dracut.returncode != 0:
            return self._failed("dkms", "dracut failed", self._tail(dracut.stderr))
        
        details.append(f"Copied {len(copied)} source files to {dkms_dir}")
        if self.inspector.secure_boot_enabled():
            details.append("Secure Boot is enabled: sign the installed module and enroll the key")
        
        return StepResult(StepStatus.SUCCESS, "dkms", "DKMS setup complete", details)
    
    def load_module(self) -> StepResult:
        """(Re)load the module with modprobe."""
        if not is_root():
            return self._failed("load", "Loading modules requires root privileges")
        
        if self.inspector.module_loaded():
            run_command(['modprobe', '-r', self.driver_name])
        
        result = run_command(['modprobe', self.driver_name])
        if result.returncode != 0:
            details = self._tail(result.stderr)
            details.extend(self._tail(run_command(['dmesg']).stdout))
            if self.inspector.secure_boot_enabled():
                details.append("Secure Boot is enabled: the module must be signed with an enrolled key")
            return self._failed("load", "Failed to load module", details)
        
        return StepResult(StepStatus.SUCCESS, "load", f"{self.driver_name} loaded")
    
    def full_install(self) -> List[StepResult]:
        """
        Patch, build, sign, install and enroll, stopping at the first failure.
        
        Steps whose outcome is already present on disk are reported as skipped.
        """
        results = []
        secure_boot = self.inspector.secure_boot_enabled()
        
        steps = [
            ("patch", self._patch_if_needed),
            ("build", self._build_if_needed),
            ("sign", lambda: self._sign_if_needed(secure_boot)),
            ("install", self._install_if_needed),
            ("enroll", lambda: self._enroll_if_needed(secure_boot)),
        ]
        
        for index, (name, step) in enumerate(steps, 1):
            self.logger.info(f"Step {index}/{len(steps)}: {name}")
            result = step()
            results.append(result)
            if not result.ok:
                self.logger.error(f"Step {name} failed: {result.message}")
                break
        
        return results
    
    def _patch_if_needed(self) -> StepResult:
        if self.inspector.patches_applied():
            return StepResult(StepStatus.SKIPPED, "patch", "All transformations already applied")
        return self.apply_patches()
    
    def _build_if_needed(self) -> StepResult:
        built = self.inspector.find_built_module()
        if built is not None:
            newest_source = max(
                (t.file_path.stat().st_mtime for t in self.engine.targets() if t.exists()),
                default=0
            )
            if built.stat().st_mtime >= newest_source:
                return StepResult(StepStatus.SKIPPED, "build", f"{built} is up to date")
        return self.build_module()
    
    def _sign_if_needed(self, secure_boot: bool) -> StepResult:
        if not secure_boot:
            return StepResult(StepStatus.SKIPPED, "sign", "Secure Boot disabled")
        if self.inspector.module_signed(str(self.built_module_path)):
            return StepResult(StepStatus.SKIPPED, "sign", "Module already signed")
        key_result = self.generate_signing_key()
        if not key_result.ok:
            return key_result
        return self.sign_module(str(self.built_module_path))
    
    def _install_if_needed(self) -> StepResult:
        location = self.inspector.find_installed_module()
        if (location is not None and location.match == ModuleMatch.EXACT
                and detect_compression(str(location.path)) == Compression.NONE
                and calculate_file_hash(str(location.path)) == calculate_file_hash(str(self.built_module_path))):
            return StepResult(StepStatus.SKIPPED, "install", f"{location.path} matches the built module")
        return self.install_module()
    
    def _enroll_if_needed(self, secure_boot: bool) -> StepResult:
        if not secure_boot:
            return StepResult(StepStatus.SKIPPED, "enroll", "Secure Boot disabled")
        return self.enroll_mok_key()
    
    def _default_module_to_sign(self) -> Optional[Path]:
        if self.built_module_path.is_file():
            return self.built_module_path
        location = self.inspector.find_installed_module()
        return location.resolved_path if location else None
    
    def _run_sign_file(self, sign_tool: str, module: Path):
        return run_command([
            sign_tool, self.settings.get('signing_hash'),
            str(self.signing_key), str(self.signing_cert), str(module),
        ])
    
    def _sign_compressed(self, sign_tool: str, path: Path, compression: Compression):
        with tempfile.TemporaryDirectory(prefix="rcraid-sign-") as work_dir:
            scratch = decompress_module(str(path), str(Path(work_dir) / f"{self.driver_name}.ko"))
            result = self._run_sign_file(sign_tool, scratch)
            if result.returncode != 0:
                return result
            
            recompressed = compress_module(str(scratch), str(Path(work_dir) / path.name), compression)
            shutil.copymode(path, recompressed)
            shutil.move(str(recompressed), str(path))
            return result
    
    def _write_boot_config(self):
        """Load the module at boot, ahead of ahci claiming the controller."""
        load_dir = ensure_directory(self.settings.get('modules_load_dir'))
        (load_dir / f"{self.driver_name}.conf").write_text(
            f"# Load AMD RAID driver\n{self.driver_name}\n"
        )
        
        modprobe_dir = ensure_directory(self.settings.get('modprobe_dir'))
        (modprobe_dir / f"{self.driver_name}.conf").write_text(
            f"# Ensure {self.driver_name} loads before ahci claims the devices\n"
            f"softdep ahci pre: {self.driver_name}\n"
        )
    
    def _dkms_conf(self) -> str:
        return (
            f'PACKAGE_NAME="{self.driver_name}"\n'
            f'PACKAGE_VERSION="{self.driver_version}"\n'
            f'BUILT_MODULE_NAME[0]="{self.driver_name}"\n'
            'DEST_MODULE_LOCATION[0]="/extra"\n'
            'AUTOINSTALL="yes"\n'
            f'MAKE[0]="ln -sf {BLOB_NAME} {BLOB_LINK}; '
            'make -C ${kernel_source_dir} M=${dkms_tree}/${PACKAGE_NAME}/${PACKAGE_VERSION}/build modules"\n'
        )
    
    def _describe_patch_report(self, report: PatchReport) -> List[str]:
        details = []
        for target_report in report.targets:
            name = target_report.target.file_path.name
            for outcome in target_report.outcomes:
                method = f" ({outcome.method})" if outcome.method else ""
                details.append(f"{name}: {outcome.transformation_id}: {outcome.status.value}{method}")
            details.extend(f"{name}: warning: {w}" for w in target_report.warnings)
            if target_report.error:
                details.append(f"{name}: error: {target_report.error}")
        return details
    
    def _failed(self, step: str, message: str, details: Optional[List[str]] = None) -> StepResult:
        self.logger.error(message)
        return StepResult(StepStatus.FAILED, step, message, details or [])
    
    @staticmethod
    def _tail(output: str, lines: int = 20) -> List[str]:
        return [line for line in (output or "").splitlines()[-lines:] if line.strip()]
