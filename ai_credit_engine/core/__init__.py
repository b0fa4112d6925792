"""
Core modules for the AI credit engine.

This package contains pricing, allocation, deduction, metering,
notification and cost reporting logic.
"""
