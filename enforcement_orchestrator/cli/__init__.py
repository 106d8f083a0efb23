"""
CLI package for Enforcement Orchestrator

Provides command-line interface for submitting plans, inspecting jobs and
operating workers and provider circuits.
"""

from .main import main, cli

__all__ = ["main", "cli"]
