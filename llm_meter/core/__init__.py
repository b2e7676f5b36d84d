"""
Core modules for LLM Meter.

This package contains token estimation, pricing, metering, and the
monthly balance reset scheduler.
"""
