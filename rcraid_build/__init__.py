"""
Patch, build, sign and install tooling for the AMD rcraid RAID driver on
RHEL 9/10 and compatible distributions.
"""

__version__ = "1.0.0"
