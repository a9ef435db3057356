#!/usr/bin/env python3
"""
Tests for the module build, signing and installation orchestrator.
"""

import os
import stat
import unittest
import tempfile
import shutil
import lzma
import subprocess
from pathlib import Path
from unittest.mock import patch

from rcraid_build.build.module_builder import BLOB_LINK, ModuleBuilder, StepStatus
from rcraid_build.config.settings import ManagerSettings
from rcraid_build.verification.module_signature import SIGNATURE_MARKER, is_module_signed
from rcraid_build.tests.sdk_fixtures import EL9_KERNEL, create_sdk, make_env


MODULE_BYTES = b"\x7fELF\x02\x01\x01\x00" + b"\x00" * 128 + b"rcraid"


class FakeCommands:
    """Records external commands and simulates their side effects."""

    def __init__(self, src_dir: Path):
        self.src_dir = src_dir
        self.calls = []
        self.failing = set()
        self.outputs = {}

    def __call__(self, cmd, **kwargs):
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)
        name = Path(cmd[0]).name

        if name in self.failing:
            return subprocess.CompletedProcess(cmd, 2, "", f"{name}: error")

        if name == 'make':
            (self.src_dir / "rcraid.ko").write_bytes(MODULE_BYTES)
        elif name == 'openssl':
            Path(cmd[cmd.index('-keyout') + 1]).write_text("PRIVATE KEY")
            Path(cmd[cmd.index('-out') + 1]).write_bytes(b"0\x82DER")
        elif name == 'sign-file':
            with open(cmd[-1], 'ab') as f:
                f.write(b"pkcs7" + SIGNATURE_MARKER)

        return subprocess.CompletedProcess(cmd, 0, self.outputs.get(name, ""), "")

    def commands(self, name):
        return [c for c in self.calls if Path(c[0]).name == name]


class TestModuleBuilder(unittest.TestCase):
    """Test cases for ModuleBuilder class."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = Path(tempfile.mkdtemp())
        self.sdk_dir = create_sdk(self.test_dir)
        self.src_dir = self.sdk_dir / "src"
        self.modules_root = self.test_dir / "lib" / "modules"
        self.kernel_source = self.test_dir / "usr_src" / "kernels" / EL9_KERNEL
        (self.kernel_source / "scripts").mkdir(parents=True)
        (self.kernel_source / "scripts" / "sign-file").write_text("#!/bin/sh\n")

        self.settings = ManagerSettings()
        self.settings.set('sdk_dir', str(self.sdk_dir))
        self.settings.set('modules_root', str(self.modules_root))
        self.settings.set('dkms_tree', str(self.test_dir / "var" / "lib" / "dkms"))
        self.settings.set('dkms_source_root', str(self.test_dir / "dkms_src"))
        self.settings.set('proc_modules', str(self.test_dir / "proc_modules"))
        self.settings.set('modules_load_dir', str(self.test_dir / "etc" / "modules-load.d"))
        self.settings.set('modprobe_dir', str(self.test_dir / "etc" / "modprobe.d"))

        self.env = make_env(9, kernel_source_dir=str(self.kernel_source))
        self.builder = ModuleBuilder(self.settings, self.env)

        self.commands = FakeCommands(self.src_dir)
        run_patcher = patch('rcraid_build.build.module_builder.run_command', side_effect=self.commands)
        inspector_run_patcher = patch('rcraid_build.verification.state_inspector.run_command', side_effect=self.commands)
        root_patcher = patch('rcraid_build.build.module_builder.is_root', return_value=True)
        for patcher in (run_patcher, inspector_run_patcher, root_patcher):
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        """Clean up test environment."""
        shutil.rmtree(self.test_dir)

    def create_key(self):
        self.builder.cert_dir.mkdir(parents=True, exist_ok=True)
        self.builder.signing_key.write_text("PRIVATE KEY")
        self.builder.signing_cert.write_bytes(b"0\x82DER")

    def test_ensure_blob_link(self):
        """Test creation of the blob object symlink."""
        result = self.builder.ensure_blob_link()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        link = self.src_dir / BLOB_LINK
        self.assertTrue(link.is_symlink())
        self.assertEqual(os.readlink(link), "rcblob.x86_64")

        self.assertEqual(self.builder.ensure_blob_link().status, StepStatus.SKIPPED)

    def test_apply_patches_dry_run(self):
        """Test that a dry run neither writes nor links."""
        result = self.builder.apply_patches(dry_run=True)

        self.assertEqual(result.status, StepStatus.SUCCESS)
        self.assertFalse((self.src_dir / BLOB_LINK).exists())
        self.assertTrue(any("would_apply" in d for d in result.details))

    def test_build_patches_first(self):
        """Test that building applies missing patches and runs kbuild."""
        result = self.builder.build_module()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        self.assertTrue(self.builder.inspector.patches_applied())
        self.assertTrue((self.src_dir / BLOB_LINK).is_symlink())
        self.assertEqual(
            self.commands.commands('make'),
            [['make', '-C', str(self.modules_root / EL9_KERNEL / "build"), f"M={self.src_dir}", 'modules']]
        )

    def test_build_failure(self):
        """Test a failing compiler run."""
        self.commands.failing.add('make')

        result = self.builder.build_module()

        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(result.details, ["make: error"])

    def test_build_without_headers(self):
        """Test that missing kernel headers stop the build."""
        builder = ModuleBuilder(self.settings, make_env(9))

        result = builder.build_module()

        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(self.commands.commands('make'), [])

    def test_generate_signing_key(self):
        """Test key generation and permissions."""
        result = self.builder.generate_signing_key()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        openssl = self.commands.commands('openssl')[0]
        self.assertIn('rsa:4096', openssl)
        self.assertEqual(openssl[openssl.index('-outform') + 1], 'DER')
        self.assertEqual(stat.S_IMODE(os.stat(self.builder.signing_key).st_mode), 0o600)
        self.assertEqual(stat.S_IMODE(os.stat(self.builder.cert_dir).st_mode), 0o700)

        self.assertEqual(self.builder.generate_signing_key().status, StepStatus.SKIPPED)
        self.assertEqual(self.builder.generate_signing_key(force=True).status, StepStatus.SUCCESS)
        self.assertEqual(len(self.commands.commands('openssl')), 2)

    def test_sign_requires_root(self):
        """Test the root check."""
        with patch('rcraid_build.build.module_builder.is_root', return_value=False):
            result = self.builder.sign_module()

        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(self.commands.calls, [])

    def test_sign_built_module(self):
        """Test signing the module in the source tree."""
        self.create_key()
        built = self.src_dir / "rcraid.ko"
        built.write_bytes(MODULE_BYTES)

        result = self.builder.sign_module()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        self.assertTrue(is_module_signed(str(built)))
        self.assertEqual(
            self.commands.commands('sign-file'),
            [[self.env.sign_tool, 'sha512', str(self.builder.signing_key), str(self.builder.signing_cert), str(built)]]
        )

    def test_sign_compressed_installed_module(self):
        """Test signing an xz module in place."""
        self.create_key()
        installed = self.modules_root / EL9_KERNEL / "extra" / "rcraid.ko.xz"
        installed.parent.mkdir(parents=True)
        installed.write_bytes(lzma.compress(MODULE_BYTES, check=lzma.CHECK_CRC32))

        result = self.builder.sign_installed_module()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        self.assertTrue(installed.is_file())
        data = lzma.decompress(installed.read_bytes())
        self.assertTrue(data.startswith(MODULE_BYTES))
        self.assertTrue(data.endswith(SIGNATURE_MARKER))

    def test_sign_without_sign_tool(self):
        """Test signing when kernel headers lack sign-file."""
        self.create_key()
        (self.src_dir / "rcraid.ko").write_bytes(MODULE_BYTES)
        (self.kernel_source / "scripts" / "sign-file").unlink()

        result = self.builder.sign_module()

        self.assertEqual(result.status, StepStatus.FAILED)

    def test_install_module(self):
        """Test module installation and boot configuration."""
        (self.src_dir / "rcraid.ko").write_bytes(MODULE_BYTES)

        result = self.builder.install_module()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        installed = self.modules_root / EL9_KERNEL / "extra" / "rcraid.ko"
        self.assertEqual(installed.read_bytes(), MODULE_BYTES)
        self.assertEqual(self.commands.commands('depmod'), [['depmod', '-a', EL9_KERNEL]])
        self.assertEqual(self.commands.commands('dracut'), [['dracut', '-f']])

        load_conf = self.test_dir / "etc" / "modules-load.d" / "rcraid.conf"
        self.assertEqual(load_conf.read_text(), "# Load AMD RAID driver\nrcraid\n")
        modprobe_conf = self.test_dir / "etc" / "modprobe.d" / "rcraid.conf"
        self.assertIn("softdep ahci pre: rcraid\n", modprobe_conf.read_text())

    @patch('rcraid_build.build.module_builder.shutil.copy2', side_effect=OSError("No space left on device"))
    def test_install_copy_failure(self, mock_copy):
        """Test that a failed copy is reported as a failed step."""
        (self.src_dir / "rcraid.ko").write_bytes(MODULE_BYTES)

        result = self.builder.install_module()

        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertIn("No space left on device", result.message)
        self.assertEqual(self.commands.commands('depmod'), [])

    def test_install_without_build(self):
        """Test that installing requires a built module."""
        result = self.builder.install_module()

        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(self.commands.calls, [])

    @patch('shutil.which', return_value='/usr/sbin/dkms')
    def test_setup_dkms(self, mock_which):
        """Test DKMS registration of a patched source copy."""
        result = self.builder.setup_dkms()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        dkms_dir = self.settings.dkms_source_dir
        self.assertEqual(dkms_dir.name, "rcraid-9.3.3")
        self.assertIn("sdev->host->max_sectors = 256;", (dkms_dir / "rc_init.c").read_text())
        self.assertIn("PATCHED_FOR_RHEL", (dkms_dir / "mk_certs").read_text())
        self.assertTrue((dkms_dir / BLOB_LINK).is_symlink())
        self.assertIn('BUILT_MODULE_NAME[0]="rcraid"', (dkms_dir / "dkms.conf").read_text())

        # the SDK itself is left untouched
        self.assertNotIn("max_sectors", (self.src_dir / "rc_init.c").read_text())

        dkms_actions = [c[1] for c in self.commands.commands('dkms')]
        self.assertEqual(dkms_actions, ['status', 'add', 'build', 'install'])

    @patch('shutil.which', return_value='/usr/sbin/dkms')
    def test_setup_dkms_replaces_registration(self, mock_which):
        """Test that an existing registration is removed first."""
        self.commands.outputs['dkms'] = "rcraid/9.3.3, 5.14.0-503.el9.x86_64, x86_64: installed\n"

        self.builder.setup_dkms()

        dkms_actions = [c[1] for c in self.commands.commands('dkms')]
        self.assertEqual(dkms_actions, ['status', 'remove', 'add', 'build', 'install'])

    @patch('shutil.which', return_value=None)
    def test_setup_dkms_unavailable(self, mock_which):
        """Test DKMS setup without dkms installed."""
        result = self.builder.setup_dkms()

        self.assertEqual(result.status, StepStatus.FAILED)

    def test_enroll_mok_key(self):
        """Test MOK enrollment."""
        self.create_key()

        result = self.builder.enroll_mok_key()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        self.assertIn(['mokutil', '--import', str(self.builder.signing_cert)], self.commands.calls)

    def test_enroll_already_enrolled(self):
        """Test that an enrolled key is not imported again."""
        self.create_key()
        self.commands.outputs['mokutil'] = f"{self.builder.signing_cert} is already enrolled\n"

        result = self.builder.enroll_mok_key()

        self.assertEqual(result.status, StepStatus.SKIPPED)
        self.assertEqual(len(self.commands.commands('mokutil')), 1)

    def test_load_module_reloads(self):
        """Test that a loaded module is removed before loading."""
        Path(self.settings.get('proc_modules')).write_text("rcraid 1470464 0 - Live 0x0\n")

        result = self.builder.load_module()

        self.assertEqual(result.status, StepStatus.SUCCESS)
        self.assertEqual(self.commands.commands('modprobe'), [['modprobe', '-r', 'rcraid'], ['modprobe', 'rcraid']])

    def test_full_install_without_secure_boot(self):
        """Test the full sequence and its skip logic."""
        self.commands.outputs['mokutil'] = "SecureBoot disabled\n"

        results = self.builder.full_install()

        self.assertEqual(
            [(r.step, r.status) for r in results],
            [
                ("patch", StepStatus.SUCCESS),
                ("build", StepStatus.SUCCESS),
                ("sign", StepStatus.SKIPPED),
                ("install", StepStatus.SUCCESS),
                ("enroll", StepStatus.SKIPPED),
            ]
        )

        results = self.builder.full_install()

        self.assertTrue(all(r.status == StepStatus.SKIPPED for r in results))

    def test_full_install_with_secure_boot(self):
        """Test that Secure Boot adds signing and enrollment."""
        self.commands.outputs['mokutil'] = "SecureBoot enabled\n"

        results = self.builder.full_install()

        self.assertEqual([r.status for r in results], [StepStatus.SUCCESS] * 5)
        self.assertTrue(is_module_signed(str(self.src_dir / "rcraid.ko")))
        self.assertTrue(is_module_signed(str(self.modules_root / EL9_KERNEL / "extra" / "rcraid.ko")))

    def test_full_install_stops_on_failure(self):
        """Test that a failed step ends the sequence."""
        self.commands.failing.add('make')

        results = self.builder.full_install()

        self.assertEqual([r.step for r in results], ["patch", "build"])
        self.assertEqual(results[-1].status, StepStatus.FAILED)


if __name__ == '__main__':
    unittest.main()
