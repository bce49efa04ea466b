"""
Launch Pilot.

AI response normalization and client-side credit accounting for an
AI-assisted startup planning assistant.
"""

__version__ = "0.1.0"
