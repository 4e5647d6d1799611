"""
Inngest Functions Registry.

This module exports all Inngest functions for registration with the serve endpoint.
"""

from .monthly_credits import monthly_credit_refresh_fn

# All functions to register with Inngest
all_functions = [
    monthly_credit_refresh_fn,
]

__all__ = [
    "all_functions",
    "monthly_credit_refresh_fn",
]
