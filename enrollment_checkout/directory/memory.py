"""In-process enrollment directory and promotion catalog."""

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from enrollment_checkout.directory.base import EnrollmentDirectory, PromotionCatalog
from enrollment_checkout.domain.models import Enrollment, EnrollmentStatus, Promotion


class MemoryEnrollmentDirectory(EnrollmentDirectory):
    """
    Dictionary-backed directory.

    Records every activation signal it receives in ``activations`` so tests
    can count them.
    """

    def __init__(self, enrollments: Iterable[Enrollment] = ()):
        self._enrollments: Dict[str, Enrollment] = {e.id: e for e in enrollments}
        self.activations: List[Tuple[str, str]] = []

    def add(self, enrollment: Enrollment) -> None:
        self._enrollments[enrollment.id] = enrollment

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        return self._enrollments.get(enrollment_id)

    async def list_enrollments(self, user_id: str) -> List[Enrollment]:
        return sorted(
            (e for e in self._enrollments.values() if e.user_id == user_id),
            key=lambda e: e.id,
        )

    async def activate(self, enrollment_id: str, order_id: str) -> None:
        self.activations.append((enrollment_id, order_id))
        enrollment = self._enrollments.get(enrollment_id)
        if enrollment is not None:
            self._enrollments[enrollment_id] = replace(enrollment, status=EnrollmentStatus.ACTIVE)


class MemoryPromotionCatalog(PromotionCatalog):
    def __init__(self, promotions: Iterable[Promotion] = ()):
        self._promotions: Dict[str, Promotion] = {p.code.upper(): p for p in promotions}

    def add(self, promotion: Promotion) -> None:
        self._promotions[promotion.code.upper()] = promotion

    async def get_promotion(self, code: str) -> Optional[Promotion]:
        return self._promotions.get(code.strip().upper())
