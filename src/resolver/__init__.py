"""Resolver package for template expressions (conditions, refs, substitutions)."""

from resolver.base import (
    OMIT,
    Computed,
    References,
    collect_references,
    contains_computed,
)
from resolver.evaluator import ExpressionEvaluator, ResourceLookup

__all__ = [
    "OMIT",
    "Computed",
    "References",
    "collect_references",
    "contains_computed",
    "ExpressionEvaluator",
    "ResourceLookup",
]
