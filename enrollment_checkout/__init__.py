"""
Enrollment checkout core.

Order, checkout and payment lifecycle for program enrollments, with the
cache-invalidation protocol that keeps order, enrollment and payment views
consistent while a purchase moves through the payment gateway.
"""

__version__ = "0.1.0"
