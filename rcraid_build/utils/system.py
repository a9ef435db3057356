#!/usr/bin/env python3
"""
Process helpers for invoking external tools (make, dkms, mokutil, ...).
"""

import os
import logging
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

# Exit status a shell reports for a missing command
COMMAND_NOT_FOUND = 127


def run_command(cmd: List[str], cwd: Optional[str] = None, input: Optional[str] = None,
                env: Optional[dict] = None, capture: bool = True) -> subprocess.CompletedProcess:
    """
    Run an external command and capture its output.
    
    No timeout is applied: builds and DKMS runs may take arbitrarily long.
    A missing executable is reported as exit status 127 instead of raising.
    
    Args:
        cmd: Command and arguments
        cwd: Working directory (optional)
        input: Text passed on stdin (optional)
        env: Extra environment variables (optional)
        capture: Capture output; False leaves the terminal to the command
        
    Returns:
        subprocess.CompletedProcess with text stdout/stderr
    """
    logger.debug(f"Running: {' '.join(str(part) for part in cmd)}")
    
    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)
    
    try:
        return subprocess.run(
            [str(part) for part in cmd],
            cwd=cwd,
            input=input,
            capture_output=capture,
            text=True,
            env=run_env
        )
    except FileNotFoundError:
        logger.warning(f"Command not found: {cmd[0]}")
        return subprocess.CompletedProcess(
            args=cmd,
            returncode=COMMAND_NOT_FOUND,
            stdout="",
            stderr=f"{cmd[0]}: command not found"
        )


def is_root() -> bool:
    """Check for root privileges."""
    return os.geteuid() == 0
