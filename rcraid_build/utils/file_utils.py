#!/usr/bin/env python3
"""
File utilities for the rcraid build tooling.
Provides backup, atomic replacement and hashing helpers used on the SDK tree.
"""

import os
import shutil
import hashlib
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

# Vendor sources are mostly ASCII but are not guaranteed to be valid UTF-8;
# surrogateescape keeps every byte intact across a read/write cycle.
SOURCE_ENCODING = 'utf-8'
SOURCE_ERRORS = 'surrogateescape'


def ensure_directory(path: str, mode: Optional[int] = None) -> Path:
    """
    Ensure a directory exists, creating it if necessary.
    
    Args:
        path: Directory path to create
        mode: Permission bits to apply to the directory (optional)
        
    Returns:
        Path object for the directory
    """
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    if mode is not None:
        os.chmod(dir_path, mode)
    return dir_path


def backup_path_for(file_path: str, backup_suffix: str = ".orig") -> Path:
    """Return the sibling backup path for a file."""
    source_path = Path(file_path)
    return source_path.with_name(source_path.name + backup_suffix)


def backup_file_once(file_path: str, backup_suffix: str = ".orig") -> Tuple[Optional[Path], bool]:
    """
    Create a backup of a file unless one already exists.
    
    An existing backup is never overwritten: the first copy taken is the
    authoritative original.
    
    Args:
        file_path: Path to file to backup
        backup_suffix: Suffix appended to the file name
        
    Returns:
        Tuple of (backup path or None if the source is missing, created flag)
    """
    source_path = Path(file_path)
    if not source_path.exists():
        return None, False
        
    backup_path = backup_path_for(file_path, backup_suffix)
    if backup_path.exists():
        return backup_path, False
        
    shutil.copy2(source_path, backup_path)
    return backup_path, True


def read_text(file_path: str) -> str:
    """Read a source file without losing undecodable bytes."""
    with open(file_path, 'r', encoding=SOURCE_ENCODING, errors=SOURCE_ERRORS, newline='') as f:
        return f.read()


def atomic_write_text(file_path: str, content: str) -> None:
    """
    Replace a file's content atomically.
    
    The new content is written to a temporary file in the same directory
    and renamed over the target, so readers only ever see the old or the
    new file. Permission bits of the original are preserved.
    
    Args:
        file_path: File to replace
        content: New text content
    """
    target = Path(file_path)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, 'w', encoding=SOURCE_ENCODING, errors=SOURCE_ERRORS, newline='') as f:
            f.write(content)
        if target.exists():
            shutil.copymode(target, temp_name)
        os.replace(temp_name, target)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def atomic_copy(source: str, destination: str) -> None:
    """Copy a file over another one via temp-then-rename."""
    dest = Path(destination)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=str(dest.parent))
    os.close(fd)
    try:
        shutil.copy2(source, temp_name)
        os.replace(temp_name, dest)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def calculate_file_hash(file_path: str, algorithm: str = 'sha256') -> str:
    """
    Calculate hash of a file.
    
    Args:
        file_path: Path to file
        algorithm: Hash algorithm to use
        
    Returns:
        Hex digest of file hash
    """
    hash_obj = hashlib.new(algorithm)
    
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(4096), b""):
            hash_obj.update(chunk)
            
    return hash_obj.hexdigest()


def remove_matching(directory: str, patterns: List[str]) -> List[str]:
    """
    Remove files and directories in a directory matching glob patterns.
    
    Args:
        directory: Directory to clean (not recursive)
        patterns: Glob patterns relative to the directory
        
    Returns:
        List of removed paths
    """
    dir_path = Path(directory)
    removed = []
    if not dir_path.is_dir():
        return removed
        
    for pattern in patterns:
        for match in sorted(dir_path.glob(pattern)):
            if not match.exists() and not match.is_symlink():
                continue
            if match.is_dir() and not match.is_symlink():
                shutil.rmtree(match)
            else:
                match.unlink()
            removed.append(str(match))
            
    return removed
