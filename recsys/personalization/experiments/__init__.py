"""
Experiments: A/B test definitions, deterministic assignment and results.
"""

from .ab_testing import ABTest, ABTestManager, Variant, assign_variant

__all__ = ['ABTest', 'ABTestManager', 'Variant', 'assign_variant']
