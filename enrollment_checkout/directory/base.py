"""Interfaces of the collaborators that own enrollments and promotions."""

from abc import ABC, abstractmethod
from typing import List, Optional

from enrollment_checkout.domain.models import Enrollment, Promotion


class EnrollmentDirectory(ABC):
    """Read access to enrollments plus the write-once activation signal."""

    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def list_enrollments(self, user_id: str) -> List[Enrollment]:
        ...

    @abstractmethod
    async def activate(self, enrollment_id: str, order_id: str) -> None:
        """
        Tell the enrollment service that an enrollment was paid for.

        Receivers treat a repeated signal for the same (enrollment, order)
        as a no-op.
        """


class PromotionCatalog(ABC):
    @abstractmethod
    async def get_promotion(self, code: str) -> Optional[Promotion]:
        ...
