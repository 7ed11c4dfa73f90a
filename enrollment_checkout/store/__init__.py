"""Order stores."""
from .base import CheckoutStore, EnrollmentClaimConflict
from .memory import MemoryCheckoutStore

__all__ = ["CheckoutStore", "EnrollmentClaimConflict", "MemoryCheckoutStore"]
