"""
SDK for LLM Meter.

Provides programmatic access to usage metering.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
