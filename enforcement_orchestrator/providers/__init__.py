"""
Provider adapter interface for Enforcement Orchestrator
"""

from .base import ProviderAdapter, ProviderRegistry

__all__ = ["ProviderAdapter", "ProviderRegistry"]
