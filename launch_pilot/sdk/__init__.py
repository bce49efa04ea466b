"""
SDK for Launch Pilot.

Provides the metered AI client and the feature call sites built on it.
"""

from .ai_client import AICompletionError, MeteredAIClient
from .features import analyze_project, deep_analysis, generate_ideas

__all__ = [
    "AICompletionError",
    "MeteredAIClient",
    "analyze_project",
    "deep_analysis",
    "generate_ideas",
]
