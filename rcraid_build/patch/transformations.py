#!/usr/bin/env python3
"""
Source transformation catalogue for the AMD rcraid driver SDK.

Each Transformation is one named, idempotent edit of a vendor source file.
It carries an applicability predicate over the detected environment, a
detection predicate over file content ("already applied"), an optional
unified-diff hunk against the pristine vendor baseline, and a
content-anchored substitution used when the hunk no longer applies.

Transformations are grouped into three ordered sets:

- EL9 (kernel 5.14 API surface), selected when the major release is < 10
- EL10 (kernel 6.12 API surface), selected when the major release is >= 10
- common (mk_certs build-tool fixes), always run after the gated set
"""

import re
from typing import Callable, List, Optional
from dataclasses import dataclass

from ..config.environment import EnvironmentDescriptor


RC_CONFIG = "rc_config.c"
RC_INIT = "rc_init.c"
MK_CERTS = "mk_certs"

# Files that may be transformed; C sources live in the SDK source directory,
# mk_certs at the SDK root
SOURCE_FILES = [RC_CONFIG, RC_INIT]
TARGET_FILES = [RC_CONFIG, RC_INIT, MK_CERTS]


@dataclass(frozen=True)
class Transformation:
    """A single named, version-gated textual edit of one SDK file."""
    id: str
    target: str
    description: str
    applicability: Callable[[EnvironmentDescriptor], bool]
    detection: Callable[[str], bool]
    substitute: Callable[[str], Optional[str]]
    hunk: Optional[str] = None

    def is_applicable(self, env: EnvironmentDescriptor) -> bool:
        return self.applicability(env)

    def is_applied(self, content: str) -> bool:
        return self.detection(content)


def _el9(env: EnvironmentDescriptor) -> bool:
    return env.major_version < 10


def _el10(env: EnvironmentDescriptor) -> bool:
    return env.major_version >= 10


def _always(env: EnvironmentDescriptor) -> bool:
    return True


def _sub_or_none(pattern: 're.Pattern', repl, content: str) -> Optional[str]:
    """re.subn that reports a missing anchor as None."""
    new_content, count = pattern.subn(repl, content)
    return new_content if count else None


RHEL_96_GUARD = "#if defined(RHEL_RELEASE_CODE) && RHEL_RELEASE_CODE >= RHEL_RELEASE_VERSION(9,6)"
_RHEL_96_GUARD_RE = re.escape(RHEL_96_GUARD)


# --- EL9: rc_config.c genhd.h include -------------------------------------

GENHD_FIXED_BLOCK = (
    "#if LINUX_VERSION_CODE < KERNEL_VERSION(5,14,0) && !defined(RHEL_RELEASE_CODE)\n"
    "#include <linux/genhd.h>\n"
    "#elif defined(RHEL_RELEASE_CODE) && RHEL_RELEASE_CODE < RHEL_RELEASE_VERSION(9,6)\n"
    "#include <linux/genhd.h>\n"
    "#endif\n"
    "#include <linux/blkdev.h>\n"
)

GENHD_HUNK = """\
--- a/rc_config.c
+++ b/rc_config.c
@@ -8,13 +8,12 @@
 #include <linux/fs.h>
 #include <linux/miscdevice.h>
 #include <linux/version.h>
-#if LINUX_VERSION_CODE < KERNEL_VERSION(5,14,0)
-#ifndef RHEL_RCBUILD
+#if LINUX_VERSION_CODE < KERNEL_VERSION(5,14,0) && !defined(RHEL_RELEASE_CODE)
 #include <linux/genhd.h>
-#endif
-#else
-//#include <blkdev.h>
+#elif defined(RHEL_RELEASE_CODE) && RHEL_RELEASE_CODE < RHEL_RELEASE_VERSION(9,6)
+#include <linux/genhd.h>
 #endif
+#include <linux/blkdev.h>
 #include <linux/sched.h>
 #include <linux/completion.h>
 #include <linux/vmalloc.h>
"""

_GENHD_LEGACY_RE = re.compile(
    r'^#if LINUX_VERSION_CODE < KERNEL_VERSION\(5, ?14, ?0\)[ \t]*\n'
    r'#ifndef RHEL_RCBUILD[ \t]*\n'
    r'#include <linux/genhd\.h>[ \t]*\n'
    r'#endif[ \t]*\n'
    r'#else[ \t]*\n'
    r'//[ \t]*#include <(?:linux/)?blkdev\.h>[ \t]*\n'
    r'#endif[ \t]*\n',
    re.MULTILINE,
)


def _fix_genhd_include(content: str) -> Optional[str]:
    return _sub_or_none(_GENHD_LEGACY_RE, lambda m: GENHD_FIXED_BLOCK, content)


# --- EL9: rc_init.c blk_queue_* guards -------------------------------------

_MAX_HW_SECTORS_CALL_RE = re.compile(
    r'^([ \t]*)blk_queue_max_hw_sectors\(sdev->request_queue, ([^)]*)\);[ \t]*$',
    re.MULTILINE,
)


def _guard_max_hw_sectors(content: str) -> Optional[str]:
    def repl(match):
        indent, value = match.group(1), match.group(2)
        return (
            f"{RHEL_96_GUARD}\n"
            f"{indent}sdev->host->max_sectors = {value};\n"
            "#else\n"
            f"{indent}blk_queue_max_hw_sectors(sdev->request_queue, {value});\n"
            "#endif"
        )
    return _sub_or_none(_MAX_HW_SECTORS_CALL_RE, repl, content)


VIRT_BOUNDARY_COMMENT = "/* virt_boundary handled differently in RHEL 9.6+ */"

_VIRT_BOUNDARY_CALL_RE = re.compile(
    r'^([ \t]*)blk_queue_virt_boundary\((.*)\);[ \t]*$',
    re.MULTILINE,
)


def _guard_virt_boundary(content: str) -> Optional[str]:
    def repl(match):
        indent, args = match.group(1), match.group(2)
        return (
            f"{RHEL_96_GUARD}\n"
            f"{indent}{VIRT_BOUNDARY_COMMENT}\n"
            "#else\n"
            f"{indent}blk_queue_virt_boundary({args});\n"
            "#endif"
        )
    return _sub_or_none(_VIRT_BOUNDARY_CALL_RE, repl, content)


# --- EL10: rc_init.c ------------------------------------------------------

_SYSCTL_INCLUDE_RE = re.compile(r'^(#include <linux/sysctl\.h>[ \t]*\n)', re.MULTILINE)
_VMALLOC_INCLUDE_RE = re.compile(r'^#include <linux/vmalloc\.h>', re.MULTILINE)


def _add_vmalloc_include(content: str) -> Optional[str]:
    return _sub_or_none(_SYSCTL_INCLUDE_RE, r'\1#include <linux/vmalloc.h>\n', content)


SLAVE_CFG_SIGNATURE = "rc_slave_cfg(struct scsi_device *sdev, struct queue_limits *lim)"
SLAVE_CFG_OLD_SIGNATURE = "rc_slave_cfg(struct scsi_device *sdev)"

_SLAVE_CFG_DECL_RE = re.compile(
    r'^static int[ \t]+rc_slave_cfg\(struct scsi_device \*sdev\);',
    re.MULTILINE,
)
_SLAVE_CFG_DEF_RE = re.compile(r'^rc_slave_cfg\(struct scsi_device \*sdev\)[ \t]*$', re.MULTILINE)
_SLAVE_CONFIGURE_MEMBER_RE = re.compile(r'\.slave_configure\b')

_SLAVE_CFG_NEW_DECL_RE = re.compile(
    r'^static int[ \t]+' + re.escape(SLAVE_CFG_SIGNATURE) + r';',
    re.MULTILINE,
)
_SLAVE_CFG_NEW_DEF_RE = re.compile(r'^' + re.escape(SLAVE_CFG_SIGNATURE) + r'[ \t]*$', re.MULTILINE)


def _rename_slave_configure(content: str) -> Optional[str]:
    # member, prototype and definition change together or not at all
    for pattern in (_SLAVE_CONFIGURE_MEMBER_RE, _SLAVE_CFG_DECL_RE, _SLAVE_CFG_DEF_RE):
        if len(pattern.findall(content)) != 1:
            return None
    content = _SLAVE_CONFIGURE_MEMBER_RE.sub('.sdev_configure', content)
    content = _SLAVE_CFG_DECL_RE.sub(lambda m: f"static int {SLAVE_CFG_SIGNATURE};", content)
    content = _SLAVE_CFG_DEF_RE.sub(lambda m: SLAVE_CFG_SIGNATURE, content)
    return content


def _slave_configure_renamed(content: str) -> bool:
    return (
        '.sdev_configure' in content
        and _SLAVE_CONFIGURE_MEMBER_RE.search(content) is None
        and _SLAVE_CFG_NEW_DECL_RE.search(content) is not None
        and _SLAVE_CFG_NEW_DEF_RE.search(content) is not None
        and SLAVE_CFG_OLD_SIGNATURE not in content
    )


_EL9_MAX_HW_SECTORS_BLOCK_RE = re.compile(
    r'^' + _RHEL_96_GUARD_RE + r'[ \t]*\n'
    r'[ \t]*sdev->host->max_sectors = ([^;]*);[ \t]*\n'
    r'#else[ \t]*\n'
    r'([ \t]*)blk_queue_max_hw_sectors\(sdev->request_queue, [^)]*\);[ \t]*\n'
    r'#endif[ \t]*$',
    re.MULTILINE,
)
_MAX_HW_SECTORS_ARG_RE = re.compile(r'blk_queue_max_hw_sectors\(sdev->request_queue, ([^)]*)\);')


def _use_queue_limits(content: str) -> Optional[str]:
    content, blocks = _EL9_MAX_HW_SECTORS_BLOCK_RE.subn(
        lambda m: f"{m.group(2)}lim->max_hw_sectors = {m.group(1)};", content
    )
    content, calls = _MAX_HW_SECTORS_ARG_RE.subn(lambda m: f"lim->max_hw_sectors = {m.group(1)};", content)
    return content if blocks or calls else None


def _queue_limits_used(content: str) -> bool:
    return 'lim->max_hw_sectors =' in content and 'blk_queue_max_hw_sectors' not in content


_EL9_VIRT_BOUNDARY_BLOCK_RE = re.compile(
    r'^' + _RHEL_96_GUARD_RE + r'[ \t]*\n'
    r'[ \t]*' + re.escape(VIRT_BOUNDARY_COMMENT) + r'[ \t]*\n'
    r'#else[ \t]*\n'
    r'[ \t]*blk_queue_virt_boundary\(.*\);[ \t]*\n'
    r'#endif[ \t]*\n',
    re.MULTILINE,
)
_VIRT_BOUNDARY_LINE_RE = re.compile(r'^[ \t]*blk_queue_virt_boundary\(.*\);[ \t]*\n', re.MULTILINE)


def _remove_virt_boundary(content: str) -> Optional[str]:
    content, blocks = _EL9_VIRT_BOUNDARY_BLOCK_RE.subn('', content)
    content, lines = _VIRT_BOUNDARY_LINE_RE.subn('', content)
    return content if blocks or lines else None


_REGISTER_SYSCTL_RE = re.compile(r'\bregister_sysctl\(\s*("[^"]*")\s*,\s*(\w+)\s*\)')


def _use_register_sysctl_sz(content: str) -> Optional[str]:
    return _sub_or_none(
        _REGISTER_SYSCTL_RE,
        lambda m: f"register_sysctl_sz({m.group(1)}, {m.group(2)}, ARRAY_SIZE({m.group(2)}) - 1)",
        content,
    )


# --- common: mk_certs ------------------------------------------------------

def _fix_outform(content: str) -> Optional[str]:
    if '-outform DEV' not in content:
        return None
    return content.replace('-outform DEV', '-outform DER')


DEBIAN_SIGN_TOOL_TEST = 'if [ -f "/usr/src/linux-headers-$KVERS/scripts/sign-file" ]; then'
RHEL_SIGN_TOOL_TEST = (
    'if [ -f "/usr/src/kernels/$KVERS/scripts/sign-file" ]; then\n'
    '\t\tSIGN_TOOL=/usr/src/kernels/$KVERS/scripts/sign-file\n'
    '\t    elif [ -f "/usr/src/linux-headers-$KVERS/scripts/sign-file" ]; then'
)


def _add_rhel_sign_tool(content: str) -> Optional[str]:
    if DEBIAN_SIGN_TOOL_TEST not in content:
        return None
    return content.replace(DEBIAN_SIGN_TOOL_TEST, RHEL_SIGN_TOOL_TEST)


MK_CERTS_MARKER = "PATCHED_FOR_RHEL"
MK_CERTS_MARKER_LINE = f"# {MK_CERTS_MARKER} - AMD rcraid patcher applied RHEL 9.x/10.x fixes\n"


def _add_marker(content: str) -> Optional[str]:
    first_newline = content.find('\n')
    if first_newline < 0:
        return None
    return content[:first_newline + 1] + MK_CERTS_MARKER_LINE + content[first_newline + 1:]


EL9_TRANSFORMATIONS: List[Transformation] = [
    Transformation(
        id="genhd-header-fix",
        target=RC_CONFIG,
        description="Gate linux/genhd.h on RHEL < 9.6 and include linux/blkdev.h",
        applicability=_el9,
        detection=lambda content: 'RHEL_RELEASE_VERSION(9,6)' in content,
        substitute=_fix_genhd_include,
        hunk=GENHD_HUNK,
    ),
    Transformation(
        id="blk-queue-max-hw-sectors",
        target=RC_INIT,
        description="Set host max_sectors instead of blk_queue_max_hw_sectors on RHEL 9.6+",
        applicability=_el9,
        detection=lambda content: re.search(r'sdev->host->max_sectors = [^;]+;', content) is not None,
        substitute=_guard_max_hw_sectors,
    ),
    Transformation(
        id="blk-queue-virt-boundary",
        target=RC_INIT,
        description="Skip blk_queue_virt_boundary on RHEL 9.6+",
        applicability=_el9,
        detection=lambda content: VIRT_BOUNDARY_COMMENT in content,
        substitute=_guard_virt_boundary,
    ),
]

EL10_TRANSFORMATIONS: List[Transformation] = [
    Transformation(
        id="vmalloc-header-include",
        target=RC_INIT,
        description="Include linux/vmalloc.h explicitly (kernel 6.12)",
        applicability=_el10,
        detection=lambda content: _VMALLOC_INCLUDE_RE.search(content) is not None,
        substitute=_add_vmalloc_include,
    ),
    Transformation(
        id="slave-configure-rename",
        target=RC_INIT,
        description="Rename slave_configure to sdev_configure and pass queue_limits",
        applicability=_el10,
        detection=_slave_configure_renamed,
        substitute=_rename_slave_configure,
    ),
    Transformation(
        id="queue-limits-max-hw-sectors",
        target=RC_INIT,
        description="Set lim->max_hw_sectors instead of blk_queue_max_hw_sectors",
        applicability=_el10,
        detection=_queue_limits_used,
        substitute=_use_queue_limits,
    ),
    Transformation(
        id="virt-boundary-removal",
        target=RC_INIT,
        description="Drop blk_queue_virt_boundary calls (removed in kernel 6.12)",
        applicability=_el10,
        detection=lambda content: 'blk_queue_virt_boundary' not in content,
        substitute=_remove_virt_boundary,
    ),
    Transformation(
        id="sysctl-register-sz",
        target=RC_INIT,
        description="Register the sysctl table with register_sysctl_sz",
        applicability=_el10,
        detection=lambda content: 'register_sysctl_sz(' in content,
        substitute=_use_register_sysctl_sz,
    ),
]

COMMON_TRANSFORMATIONS: List[Transformation] = [
    Transformation(
        id="mk-certs-outform-der",
        target=MK_CERTS,
        description="Fix the -outform DEV typo in the certificate helper",
        applicability=_always,
        detection=lambda content: '-outform DEV' not in content,
        substitute=_fix_outform,
    ),
    Transformation(
        id="mk-certs-rhel-sign-tool",
        target=MK_CERTS,
        description="Look for sign-file under /usr/src/kernels before linux-headers",
        applicability=_always,
        detection=lambda content: '/usr/src/kernels/' in content,
        substitute=_add_rhel_sign_tool,
    ),
    Transformation(
        id="mk-certs-marker",
        target=MK_CERTS,
        description="Mark the certificate helper as patched",
        applicability=_always,
        detection=lambda content: MK_CERTS_MARKER in content,
        substitute=_add_marker,
    ),
]

ALL_TRANSFORMATIONS: List[Transformation] = EL9_TRANSFORMATIONS + EL10_TRANSFORMATIONS + COMMON_TRANSFORMATIONS


def transformations_for(env: EnvironmentDescriptor) -> List[Transformation]:
    """
    Ordered transformations applicable to an environment.
    
    The version-gated set comes first, the common set last.
    """
    gated = EL10_TRANSFORMATIONS if env.is_el10 else EL9_TRANSFORMATIONS
    return [t for t in gated + COMMON_TRANSFORMATIONS if t.is_applicable(env)]


def get_transformation(transformation_id: str) -> Transformation:
    for transformation in ALL_TRANSFORMATIONS:
        if transformation.id == transformation_id:
            return transformation
    raise KeyError(transformation_id)
