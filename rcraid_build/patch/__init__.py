"""
Source patching system for the rcraid driver SDK.

This module provides the version-gated transformation catalogue, the
engine that applies it idempotently with backups, and restoration of the
pristine vendor sources.
"""

from .patch_engine import PatchEngine, PatchTarget, PatchReport, TargetReport, PatchError, PatchErrorKind, TransformationStatus
from .patch_rollback import PatchRollback, RestoreReport, RestoreStatus
from .transformations import Transformation, transformations_for, get_transformation

__all__ = [
    'PatchEngine',
    'PatchTarget',
    'PatchReport',
    'TargetReport',
    'PatchError',
    'PatchErrorKind',
    'TransformationStatus',
    'PatchRollback',
    'RestoreReport',
    'RestoreStatus',
    'Transformation',
    'transformations_for',
    'get_transformation'
]
