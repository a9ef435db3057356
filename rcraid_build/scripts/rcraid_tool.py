#!/usr/bin/env python3
"""
AMD rcraid driver tool for RHEL 9/10 and compatible distributions.

Command-line interface for patching the vendor SDK, building, signing and
installing the module, and inspecting the state of each step.
"""

import argparse
import logging
import sys
from typing import List

from rcraid_build.build.module_builder import ModuleBuilder, StepResult, StepStatus
from rcraid_build.config.environment import VersionDetector
from rcraid_build.config.settings import ManagerSettings
from rcraid_build.patch.patch_engine import PatchEngine, TransformationStatus
from rcraid_build.patch.patch_rollback import PatchRollback, RestoreStatus
from rcraid_build.verification.state_inspector import StateInspector


def setup_logging(verbose: bool = False, log_file: str = None):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    logging.basicConfig(level=level, format=log_format)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)


def load_context(args):
    """Build settings, environment, engine and inspector from the arguments."""
    settings = ManagerSettings(args.config)
    if args.sdk_dir:
        settings.set('sdk_dir', args.sdk_dir)

    env = VersionDetector.from_settings(settings).detect()
    engine = PatchEngine.from_settings(settings)
    inspector = StateInspector(settings, env, engine)
    return settings, env, engine, inspector


def print_step_results(results: List[StepResult]):
    """Print step results and exit 1 if any failed."""
    for result in results:
        print(f"\nStep: {result.step}")
        print(f"Status: {result.status.value}")
        print(f"Message: {result.message}")
        for detail in result.details:
            print(f"  {detail}")

    ok_count = sum(1 for r in results if r.status != StepStatus.FAILED)
    print(f"\nSummary: {ok_count}/{len(results)} steps completed successfully")

    if ok_count < len(results):
        sys.exit(1)


def yes_no(value: bool) -> str:
    return "yes" if value else "no"


def status_command(args):
    """Status command handler."""
    settings, env, engine, inspector = load_context(args)
    status = inspector.collect_status()

    print(f"OS:                 {env.os_name}")
    print(f"Major release:      {env.major_version} ({env.distribution_family.value})")
    print(f"Kernel:             {env.kernel_release}")
    print(f"Kernel headers:     {env.kernel_source_dir or 'not installed'}")
    print(f"Secure Boot:        {'enabled' if status.secure_boot else 'disabled'}")
    print(f"SDK directory:      {settings.sdk_dir} ({'found' if status.sdk_found else 'missing'})")
    print(f"Patches applied:    {yes_no(status.patches_applied)}")
    if status.missing_transformations:
        print(f"  missing: {', '.join(status.missing_transformations)}")
    print(f"mk_certs patched:   {yes_no(status.mk_certs_patched)}")

    if status.built_module:
        print(f"Built module:       {status.built_module} (signed: {yes_no(status.built_module_signed)})")
    else:
        print("Built module:       none")

    installed = status.installed_module
    if installed:
        print(f"Installed module:   {installed.path} ({installed.source.value}, {installed.match.value})")
        if installed.is_symlink:
            print(f"  resolves to: {installed.resolved_path} (kernel {installed.target_kernel_release})")
        print(f"  signed: {yes_no(status.installed_module_signed)}")
    else:
        print("Installed module:   none")

    print(f"Module loaded:      {yes_no(status.module_loaded)}")
    print(f"DKMS:               {'available' if status.dkms_available else 'not installed'}"
          f"{', configured' if status.dkms_configured else ''}")


def check_command(args):
    """Pre-flight check command handler."""
    settings, env, engine, inspector = load_context(args)
    problems = inspector.setup_problems()

    if not problems:
        print("All prerequisites satisfied")
        return

    print("Problems found:")
    for problem in problems:
        print(f"  - {problem}")
    sys.exit(1)


def detect_command(args):
    """Environment detection command handler."""
    settings, env, engine, inspector = load_context(args)

    print(f"OS name:             {env.os_name}")
    print(f"OS id:               {env.os_id}")
    print(f"OS version:          {env.os_version_id}")
    print(f"Distribution family: {env.distribution_family.value}")
    print(f"Major release:       {env.major_version}")
    print(f"Kernel release:      {env.kernel_release}")
    print(f"Kernel series:       {env.kernel_series}")
    print(f"Kernel source dir:   {env.kernel_source_dir or 'not found'}")
    print(f"sign-file tool:      {env.sign_tool or 'not found'}")
    print(f"Transformation set:  {'EL10' if env.is_el10 else 'EL9'}")


def patch_command(args):
    """Apply transformations command handler."""
    settings, env, engine, inspector = load_context(args)

    print(f"Patching driver SDK: {settings.sdk_dir}")
    if args.dry_run:
        print("DRY RUN MODE - No changes will be made")

    report = engine.apply_all(engine.targets(), env, dry_run=args.dry_run)

    for target_report in report.targets:
        print(f"\nFile: {target_report.target.file_path}")
        for outcome in target_report.outcomes:
            method = f" [{outcome.method}]" if outcome.method else ""
            print(f"  {outcome.transformation_id}: {outcome.status.value}{method}")
        if target_report.backup_created:
            print(f"  Backup: {target_report.target.backup_path}")
        for warning in target_report.warnings:
            print(f"  Warning: {warning}")
        if target_report.error:
            print(f"  Error: {target_report.error}")

    ok_count = sum(1 for r in report.targets if r.success)
    print(f"\nSummary: {ok_count}/{len(report.targets)} files patched successfully, "
          f"{report.applied_count} transformations applied")

    if not report.success:
        sys.exit(1)

    if not args.dry_run:
        builder = ModuleBuilder(settings, env, engine, inspector)
        builder.ensure_blob_link()


def restore_command(args):
    """Restore original sources command handler."""
    settings, env, engine, inspector = load_context(args)
    rollback = PatchRollback(str(settings.src_dir))

    print(f"Restoring original sources in {settings.sdk_dir}")
    report = rollback.restore(engine.targets(), clean=not args.no_clean)

    for result in report.results:
        print(f"\nFile: {result.file_path}")
        print(f"Status: {result.status.value}")
        print(f"Message: {result.message}")

    if report.removed_artifacts:
        print(f"\nRemoved {len(report.removed_artifacts)} build artifacts")

    print(f"\nSummary: {report.restored_count}/{len(report.results)} files restored")

    if any(r.status == RestoreStatus.FAILED for r in report.results):
        sys.exit(1)


def verify_command(args):
    """Verify transformation state command handler."""
    settings, env, engine, inspector = load_context(args)

    total = 0
    applied_count = 0
    for target in engine.targets():
        transformations = engine.transformations_for_target(target, env)
        print(f"\nFile: {target.file_path}")
        if not target.exists():
            print("  missing")
            total += len(transformations)
            continue

        applied = target.applied_markers(transformations)
        for transformation in transformations:
            state = TransformationStatus.ALREADY_APPLIED.value if transformation.id in applied else "missing"
            print(f"  {transformation.id}: {state}")
        total += len(transformations)
        applied_count += len(applied)

    print(f"\nSummary: {applied_count}/{total} transformations present")

    if applied_count < total:
        sys.exit(1)


def build_command(args):
    """Build module command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.build_module()])


def sign_command(args):
    """Sign module command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.sign_module(args.module)])


def install_command(args):
    """Install module command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.install_module()])


def dkms_command(args):
    """DKMS setup command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.setup_dkms()])


def keygen_command(args):
    """Signing key generation command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.generate_signing_key(force=args.force)])


def enroll_command(args):
    """MOK enrollment command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.enroll_mok_key()])


def load_command(args):
    """Load module command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results([builder.load_module()])


def full_install_command(args):
    """Full installation command handler."""
    settings, env, engine, inspector = load_context(args)
    builder = ModuleBuilder(settings, env, engine, inspector)
    print_step_results(builder.full_install())


def build_parser() -> argparse.ArgumentParser:
    """Construct the argument parser."""
    parser = argparse.ArgumentParser(
        description="AMD rcraid driver tool for RHEL 9/10"
    )

    parser.add_argument(
        '--sdk-dir',
        help='Path to the driver SDK directory (default: driver_sdk)'
    )

    parser.add_argument(
        '--config',
        help='JSON settings file'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--log-file',
        help='Also write log messages to this file'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    status_parser = subparsers.add_parser('status', help='Show system and driver status')
    status_parser.set_defaults(func=status_command)

    check_parser = subparsers.add_parser('check', help='Check build prerequisites')
    check_parser.set_defaults(func=check_command)

    detect_parser = subparsers.add_parser('detect', help='Show detected OS and kernel')
    detect_parser.set_defaults(func=detect_command)

    patch_parser = subparsers.add_parser('patch', help='Apply source transformations')
    patch_parser.add_argument('--dry-run', action='store_true', help='Dry run mode')
    patch_parser.set_defaults(func=patch_command)

    restore_parser = subparsers.add_parser('restore', help='Restore original sources from backups')
    restore_parser.add_argument('--no-clean', action='store_true', help='Keep build artifacts')
    restore_parser.set_defaults(func=restore_command)

    verify_parser = subparsers.add_parser('verify', help='Check which transformations are present')
    verify_parser.set_defaults(func=verify_command)

    build_cmd_parser = subparsers.add_parser('build', help='Build the kernel module')
    build_cmd_parser.set_defaults(func=build_command)

    sign_parser = subparsers.add_parser('sign', help='Sign a module')
    sign_parser.add_argument('module', nargs='?', help='Module to sign (default: built module)')
    sign_parser.set_defaults(func=sign_command)

    install_parser = subparsers.add_parser('install', help='Install the built module')
    install_parser.set_defaults(func=install_command)

    dkms_parser = subparsers.add_parser('dkms', help='Register the driver with DKMS')
    dkms_parser.set_defaults(func=dkms_command)

    keygen_parser = subparsers.add_parser('keygen', help='Generate a module signing key')
    keygen_parser.add_argument('--force', action='store_true', help='Replace an existing key')
    keygen_parser.set_defaults(func=keygen_command)

    enroll_parser = subparsers.add_parser('enroll', help='Queue the signing key for MOK enrollment')
    enroll_parser.set_defaults(func=enroll_command)

    load_parser = subparsers.add_parser('load', help='Load the module')
    load_parser.set_defaults(func=load_command)

    full_parser = subparsers.add_parser('full-install', help='Patch, build, sign, install and enroll')
    full_parser.set_defaults(func=full_install_command)

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose, args.log_file)

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
