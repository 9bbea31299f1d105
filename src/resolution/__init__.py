"""Dependency graph resolution."""

from .graph import DependencyGraph, ResolvedNode
from .policy import ConflictPolicy, NestedCopyPolicy, StrictPolicy, policy_for
from .resolver import Requirement, Resolver

__all__ = [
    "ConflictPolicy",
    "DependencyGraph",
    "NestedCopyPolicy",
    "Requirement",
    "ResolvedNode",
    "Resolver",
    "StrictPolicy",
    "policy_for",
]
