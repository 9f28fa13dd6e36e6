"""
Resilience patterns for external dependencies.

Circuit breakers stop request handlers piling up on a provider outage.
"""

from subledger.resilience.circuit_breakers import (
    create_provider_breaker,
    get_stripe_breaker,
    reset_all_breakers,
)

__all__ = [
    "create_provider_breaker",
    "get_stripe_breaker",
    "reset_all_breakers",
]
