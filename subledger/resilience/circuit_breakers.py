"""
Circuit breaker for the payment provider.

Prevents request handlers from piling up on a provider outage.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, one trial request allowed

Configuration:
- fail_max: Consecutive failures before opening (3)
- reset_timeout: Seconds the circuit stays open before half-open (30)
- excluded: Client errors (bad request, bad key) never trip the circuit
"""

import logging

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerListener, CircuitBreakerState

logger = logging.getLogger(__name__)


class LoggingListener(CircuitBreakerListener):
    """Logs every state transition of a breaker."""

    def state_change(
        self,
        cb: CircuitBreaker,
        old_state: CircuitBreakerState | None,
        new_state: CircuitBreakerState,
    ) -> None:
        new_name = new_state.name
        extra = {
            "breaker_name": cb.name,
            "old_state": old_state.name if old_state else None,
            "state": new_name,
            "fail_count": cb.fail_counter,
            "fail_max": cb.fail_max,
        }

        if new_name == "open":
            logger.error(f"Circuit breaker OPENED: {cb.name}", extra=extra)
        elif new_name == "half-open":
            logger.warning(f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)", extra=extra)
        else:
            logger.info(f"Circuit breaker CLOSED: {cb.name} (service recovered)", extra=extra)


def create_provider_breaker(fail_max: int = 3, reset_timeout: int = 30) -> CircuitBreaker:
    """
    Build a breaker for payment provider calls.

    Args:
        fail_max: Consecutive failures before opening
        reset_timeout: Seconds to stay open

    Returns:
        CircuitBreaker: Configured breaker
    """
    return CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        exclude=[stripe.InvalidRequestError, stripe.AuthenticationError],
        listeners=[LoggingListener()],
        name="Stripe",
    )


# Opens after 3 consecutive failures, stays open for 30 seconds
stripe_breaker = create_provider_breaker()


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Usage:
        breaker = get_stripe_breaker()
        breaker.call(stripe.Subscription.retrieve, subscription_id)
    """
    return stripe_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")
