"""
SDK for the AI credit engine.

Provider adapters that report AI call usage to the metering bridge.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
