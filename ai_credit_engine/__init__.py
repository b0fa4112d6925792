"""
AI Credit Engine.

Multi-tenant AI-credit accounting: organization credit pools, per-feature
member allocations, usage metering and cost/margin reporting.
"""

__version__ = "0.1.0"
