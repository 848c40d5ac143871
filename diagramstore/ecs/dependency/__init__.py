"""
Ownership dependency graph.

Orders entities so owners come before the entities they own and detects
ownership cycles.
"""
from .graph import EntityDependencyGraph, CycleStatus, GraphNode

__all__ = ["EntityDependencyGraph", "CycleStatus", "GraphNode"]
