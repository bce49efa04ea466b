"""
Core modules for Launch Pilot.

This package contains the core functionality for AI response normalization,
tier rules, credit ledger accounting, and usage gating.
"""
