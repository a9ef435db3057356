#!/usr/bin/env python3
"""
Tests for the rcraid-tool command-line interface.
"""

import io
import json
import unittest
import tempfile
import shutil
from pathlib import Path
from unittest.mock import patch

from rcraid_build.scripts import rcraid_tool
from rcraid_build.tests.sdk_fixtures import RC_INIT_SOURCE, create_sdk


class TestRcraidTool(unittest.TestCase):
    """Test cases for the command handlers."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.sdk_dir = create_sdk(self.test_dir)
        self.rc_init = self.sdk_dir / "src" / "rc_init.c"

        redhat_release = self.test_dir / "redhat-release"
        redhat_release.write_text("Red Hat Enterprise Linux release 9.6 (Plow)\n")
        os_release = self.test_dir / "os-release"
        os_release.write_text('ID="rhel"\nVERSION_ID="9.6"\n')

        self.config = self.test_dir / "rcraid.json"
        self.config.write_text(json.dumps({
            'redhat_release_file': str(redhat_release),
            'os_release_file': str(os_release),
            'src_root': str(self.test_dir / "usr_src"),
        }))

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def run_tool(self, *args, sdk_dir=None):
        argv = ['--config', str(self.config), '--sdk-dir', str(sdk_dir or self.sdk_dir)] + list(args)
        with patch('sys.stdout', new_callable=io.StringIO) as stdout:
            try:
                rcraid_tool.main(argv)
                code = 0
            except SystemExit as e:
                code = e.code
        return code, stdout.getvalue()

    def test_no_command(self):
        """Test that a missing subcommand exits 1."""
        code, output = self.run_tool()
        self.assertEqual(code, 1)

    def test_detect(self):
        """Test environment display."""
        code, output = self.run_tool('detect')

        self.assertEqual(code, 0)
        self.assertIn("Major release:       9", output)
        self.assertIn("Transformation set:  EL9", output)

    def test_patch_dry_run(self):
        """Test that a dry run leaves sources untouched."""
        code, output = self.run_tool('patch', '--dry-run')

        self.assertEqual(code, 0)
        self.assertIn("DRY RUN MODE", output)
        self.assertIn("would_apply", output)
        self.assertEqual(self.rc_init.read_text(), RC_INIT_SOURCE)

    def test_patch_verify_restore(self):
        """Test the patch, verify and restore cycle."""
        code, output = self.run_tool('verify')
        self.assertEqual(code, 1)

        code, output = self.run_tool('patch')
        self.assertEqual(code, 0)
        self.assertIn("Summary: 3/3 files patched successfully, 6 transformations applied", output)

        code, output = self.run_tool('verify')
        self.assertEqual(code, 0)
        self.assertIn("Summary: 6/6 transformations present", output)

        code, output = self.run_tool('restore')
        self.assertEqual(code, 0)
        self.assertIn("Summary: 3/3 files restored", output)
        self.assertEqual(self.rc_init.read_text(), RC_INIT_SOURCE)

    def test_patch_missing_sdk(self):
        """Test that patching a missing SDK exits 1."""
        code, output = self.run_tool('patch', sdk_dir=self.test_dir / "missing_sdk")

        self.assertEqual(code, 1)
        self.assertIn("target_missing", output)

    @patch('rcraid_build.build.module_builder.is_root', return_value=False)
    def test_install_requires_root(self, mock_root):
        """Test that root-only steps fail without privileges."""
        code, output = self.run_tool('install')

        self.assertEqual(code, 1)
        self.assertIn("Installation requires root privileges", output)

    def test_malformed_config(self):
        """Test that an unreadable config is reported."""
        self.config.write_text("{not json")

        code, output = self.run_tool('detect')

        self.assertEqual(code, 1)
        self.assertIn("Error:", output)


if __name__ == '__main__':
    unittest.main()
