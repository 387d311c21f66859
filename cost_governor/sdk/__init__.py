"""
SDK for Cost Governor.

Provides provider client wrappers that report usage to a governor.
"""

from .openai_client import BreakerTrippedError, GuardedOpenAI

__all__ = ["BreakerTrippedError", "GuardedOpenAI"]
