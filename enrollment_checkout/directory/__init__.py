"""Enrollment and promotion collaborators."""
from .base import EnrollmentDirectory, PromotionCatalog
from .memory import MemoryEnrollmentDirectory, MemoryPromotionCatalog

__all__ = [
    "EnrollmentDirectory",
    "PromotionCatalog",
    "MemoryEnrollmentDirectory",
    "MemoryPromotionCatalog",
]
