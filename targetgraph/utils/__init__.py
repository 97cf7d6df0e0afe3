"""
Utility Functions

Settle-all batch fan-out helpers for source calls.
"""

from .batch_queries import Settled, iter_batches, parallel_query, settle_all

__all__ = [
    'Settled',
    'iter_batches',
    'parallel_query',
    'settle_all',
]
