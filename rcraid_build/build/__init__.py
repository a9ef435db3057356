"""
Module build and installation orchestration for the rcraid driver.
"""

from .module_builder import ModuleBuilder, StepResult, StepStatus

__all__ = ['ModuleBuilder', 'StepResult', 'StepStatus']
