"""
Plan configuration: the single table of per-plan limits.

Every allocation, reset and tier lookup goes through a ``PlanCatalog``.
Adding a tier means adding a ``Plan`` member, its limits, and its product ID.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from subledger.config import BillingConfig, PlanLimitsConfig
from subledger.models.subscriber import Plan

logger = logging.getLogger(__name__)

# Paid tiers from lowest to highest
PAID_PLANS: tuple[Plan, ...] = (Plan.LITE, Plan.PRO)


@dataclass(frozen=True)
class PlanLimits:
    """Full per-cycle allocation of a plan."""

    input_limit: int
    output_limit: int
    unit_limit: int

    def covers(self, needed_input: int, needed_output: int) -> bool:
        """True if a full allocation of this plan can satisfy the request."""
        return needed_input <= self.input_limit and needed_output <= self.output_limit


@dataclass(frozen=True)
class PlanCatalog:
    """
    Immutable plan -> limits table plus provider product mapping.

    Attributes:
        limits: Plan -> PlanLimits
        products: provider product ID -> paid Plan
        default_tier: tier name used when a checkout names none
    """

    limits: Mapping[Plan, PlanLimits]
    products: Mapping[str, Plan] = field(default_factory=lambda: MappingProxyType({}))
    default_tier: str = "pro"

    @classmethod
    def from_config(cls, plans: PlanLimitsConfig, billing: BillingConfig) -> "PlanCatalog":
        limits = {
            Plan.FREE: PlanLimits(
                plans.free_input_tokens, plans.free_output_tokens, plans.free_monthly_units
            ),
            Plan.LITE: PlanLimits(
                plans.lite_input_tokens, plans.lite_output_tokens, plans.lite_monthly_units
            ),
            Plan.PRO: PlanLimits(
                plans.pro_input_tokens, plans.pro_output_tokens, plans.pro_monthly_units
            ),
        }

        products: dict[str, Plan] = {}
        for plan, product_id in ((Plan.LITE, billing.price_id_lite), (Plan.PRO, billing.price_id_pro)):
            product_id = product_id.strip()
            if product_id and product_id not in products:
                products[product_id] = plan

        return cls(
            limits=MappingProxyType(limits),
            products=MappingProxyType(products),
            default_tier=billing.default_checkout_tier,
        )

    def limits_for(self, plan: Plan) -> PlanLimits:
        return self.limits[plan]

    @property
    def lowest_paid_plan(self) -> Plan:
        return PAID_PLANS[0]

    def plan_for_product(self, product_id: str | None) -> Plan | None:
        """Paid plan sold under ``product_id``, or None if unrecognized."""
        if not product_id:
            return None
        return self.products.get(product_id)

    def product_for_tier(self, tier: str | None) -> tuple[Plan, str | None]:
        """
        Resolve a requested tier name ("lite", "pro") to its plan and product ID.

        Unknown or missing tier names fall back to the default checkout tier.
        The product ID is None when the tier has no configured product.
        """
        requested = (tier or self.default_tier).strip().lower()
        try:
            plan = Plan(requested.upper())
        except ValueError:
            logger.warning(
                "Unknown checkout tier, using default",
                extra={"tier": requested, "default_tier": self.default_tier},
            )
            plan = Plan(self.default_tier.upper())

        if not plan.is_paid:
            plan = Plan(self.default_tier.upper())

        for product_id, product_plan in self.products.items():
            if product_plan is plan:
                return plan, product_id
        return plan, None
