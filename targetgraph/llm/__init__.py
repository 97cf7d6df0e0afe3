"""
LLM Layer

Schema-constrained OpenAI completions used for optional refinement.
"""

from .client import StructuredLLMClient, clamp_cooldown_ms

__all__ = ['StructuredLLMClient', 'clamp_cooldown_ms']
