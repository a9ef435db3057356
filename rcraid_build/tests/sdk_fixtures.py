#!/usr/bin/env python3
"""
Excerpts of the vendor driver SDK used as test fixtures.
"""

from pathlib import Path

from rcraid_build.config.environment import DistributionFamily, EnvironmentDescriptor


RC_CONFIG_SOURCE = """\
/****************************************************************************
 *
 * Copyright (c) 2019  Advanced Micro Devices, Inc.
 *
 ****************************************************************************/

#include <linux/module.h>
#include <linux/fs.h>
#include <linux/miscdevice.h>
#include <linux/version.h>
#if LINUX_VERSION_CODE < KERNEL_VERSION(5,14,0)
#ifndef RHEL_RCBUILD
#include <linux/genhd.h>
#endif
#else
//#include <blkdev.h>
#endif
#include <linux/sched.h>
#include <linux/completion.h>
#include <linux/vmalloc.h>

#include "rc.h"
#include "rc_ahci.h"

static int rc_config_open(struct inode *inode, struct file *file);
"""

RC_INIT_SOURCE = """\
/****************************************************************************
 *
 * Copyright (c) 2019  Advanced Micro Devices, Inc.
 *
 ****************************************************************************/

#include <linux/module.h>
#include <linux/pci.h>
#include <linux/sysctl.h>
#include <scsi/scsi.h>
#include <scsi/scsi_host.h>
#include <scsi/scsi_device.h>

#include "rc.h"

static int     rc_slave_cfg(struct scsi_device *sdev);

static struct scsi_host_template rc_template = {
    .module            = THIS_MODULE,
    .name              = "rcraid",
    .queuecommand      = rc_queue_cmd,
    .slave_configure   = rc_slave_cfg,
    .can_queue         = 1,
    .this_id           = -1,
};

static struct ctl_table rcraid_table[] = {
    { .procname = "debug", .data = &rc_debug, .maxlen = sizeof(int),
      .mode = 0644, .proc_handler = proc_dointvec },
    { }
};

int
rc_slave_cfg(struct scsi_device *sdev)
{
    blk_queue_max_hw_sectors(sdev->request_queue, 256);
    blk_queue_virt_boundary(sdev->request_queue, NVME_CTRL_PAGE_SIZE - 1);
    return 0;
}

static int __init rcraid_init(void)
{
    rcraid_sysctl_hdr = register_sysctl("rcraid", rcraid_table);
    return rc_init_adapters();
}
"""

MK_CERTS_SOURCE = """\
#!/bin/bash
# Generate module signing keys and sign the rcraid module

KVERS=$(uname -r)
KEY=certs/signing_key.priv
CERT=certs/signing_key.x509

mkdir -p certs
openssl req -new -x509 -newkey rsa:2048 -keyout $KEY -outform DEV -out $CERT -nodes -days 36500 -subj "/CN=rcraid/"

SIGN_TOOL=""
	    if [ -f "/usr/src/linux-headers-$KVERS/scripts/sign-file" ]; then
		SIGN_TOOL=/usr/src/linux-headers-$KVERS/scripts/sign-file
	    fi

$SIGN_TOOL sha256 $KEY $CERT rcraid.ko
"""

EL9_KERNEL = "5.14.0-570.12.1.el9_6.x86_64"
EL10_KERNEL = "6.12.0-55.9.1.el10_0.x86_64"


def create_sdk(root: Path) -> Path:
    """Write a minimal driver SDK tree under root and return its path."""
    sdk_dir = Path(root) / "driver_sdk"
    src_dir = sdk_dir / "src"
    src_dir.mkdir(parents=True)
    
    (src_dir / "rc_config.c").write_text(RC_CONFIG_SOURCE)
    (src_dir / "rc_init.c").write_text(RC_INIT_SOURCE)
    (src_dir / "rcblob.x86_64").write_bytes(b"\x7fELF\x02\x01\x01blob")
    (src_dir / "Makefile").write_text("obj-m := rcraid.o\n")
    (sdk_dir / "mk_certs").write_text(MK_CERTS_SOURCE)
    
    return sdk_dir


def make_env(major_version: int = 9, kernel_source_dir: str = None) -> EnvironmentDescriptor:
    kernel_release = EL10_KERNEL if major_version >= 10 else EL9_KERNEL
    return EnvironmentDescriptor(
        distribution_family=DistributionFamily.RHEL,
        major_version=major_version,
        kernel_release=kernel_release,
        kernel_series="6.12" if major_version >= 10 else "5.14",
        kernel_source_dir=kernel_source_dir,
        os_name=f"Red Hat Enterprise Linux release {major_version}.6 (Plow)",
        os_id="rhel",
        os_version_id=f"{major_version}.6",
    )
