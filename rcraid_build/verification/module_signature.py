#!/usr/bin/env python3
"""
Kernel module signature detection.

Modules signed with the kernel's sign-file helper end with a PKCS#7 blob
followed by a fixed trailer string. Installed modules are often xz or gzip
compressed; they are decompressed in memory and never modified on disk.
"""

import gzip
import lzma
import shutil
import logging
from pathlib import Path
from enum import Enum

logger = logging.getLogger(__name__)

SIGNATURE_MARKER = b"~Module signature appended~\n"


class Compression(Enum):
    """Compression format of a module file."""
    NONE = "none"
    XZ = "xz"
    GZIP = "gzip"


SUFFIX_COMPRESSION = {
    '.ko': Compression.NONE,
    '.xz': Compression.XZ,
    '.gz': Compression.GZIP,
}

MIME_COMPRESSION = {
    'application/x-xz': Compression.XZ,
    'application/gzip': Compression.GZIP,
    'application/x-gzip': Compression.GZIP,
}


def detect_compression(module_path: str) -> Compression:
    """
    Identify the compression of a module file.
    
    Standard module suffixes decide directly; other names (scratch copies,
    renamed artifacts) are sniffed with libmagic.
    """
    suffix = Path(module_path).suffix
    if suffix in SUFFIX_COMPRESSION:
        return SUFFIX_COMPRESSION[suffix]
    
    import magic
    try:
        mime_type = magic.from_file(str(module_path), mime=True)
    except (magic.MagicException, OSError) as e:
        logger.debug(f"Could not identify {module_path}, treating it as uncompressed: {e}")
        return Compression.NONE
    return MIME_COMPRESSION.get(mime_type, Compression.NONE)


def read_module_bytes(module_path: str) -> bytes:
    """Return the uncompressed bytes of a module file."""
    compression = detect_compression(module_path)
    
    if compression == Compression.XZ:
        with lzma.open(module_path, 'rb') as f:
            return f.read()
    if compression == Compression.GZIP:
        with gzip.open(module_path, 'rb') as f:
            return f.read()
    with open(module_path, 'rb') as f:
        return f.read()


def is_module_signed(module_path: str) -> bool:
    """
    Check whether a module carries an appended signature.
    
    Returns False for missing or unreadable files.
    """
    if not Path(module_path).is_file():
        return False
    
    try:
        data = read_module_bytes(module_path)
    except (OSError, EOFError, lzma.LZMAError, ImportError) as e:
        logger.warning(f"Could not read module {module_path}: {e}")
        return False
    
    return SIGNATURE_MARKER in data


def decompress_module(module_path: str, destination: str) -> Path:
    """Write the uncompressed module to destination, leaving the source intact."""
    dest = Path(destination)
    dest.write_bytes(read_module_bytes(module_path))
    shutil.copymode(module_path, dest)
    return dest


def compress_module(module_path: str, destination: str, compression: Compression) -> Path:
    """Write a compressed copy of a module (kmod expects CRC32 checks for xz)."""
    dest = Path(destination)
    if compression == Compression.XZ:
        opener = lzma.open(dest, 'wb', check=lzma.CHECK_CRC32)
    elif compression == Compression.GZIP:
        opener = gzip.open(dest, 'wb')
    else:
        opener = open(dest, 'wb')
    with open(module_path, 'rb') as src, opener as out:
        shutil.copyfileobj(src, out)
    return dest
