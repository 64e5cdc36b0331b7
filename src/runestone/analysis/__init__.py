"""Architectural analysis of a workspace."""

from .analyzer import Analyzer, ProjectAnalyzer, ProjectScan, assess_readiness
from .graph import ImportGraph

__all__ = ["Analyzer", "ImportGraph", "ProjectAnalyzer", "ProjectScan", "assess_readiness"]
