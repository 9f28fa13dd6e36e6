"""
API routers for the subledger service.

Routers:
- billing: quota, subscription, webhook and usage endpoints
"""

from subledger.routers.billing import router as billing_router

__all__ = ["billing_router"]
