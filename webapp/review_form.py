"""
webapp/review_form.py
Review box shown under a finished session.
"""

import logging
import uuid
from typing import Callable, Optional

from webapp.api import BackendClient, BackendError

logger = logging.getLogger(__name__)


class ReviewForm:
    def __init__(
        self,
        client: BackendClient,
        booking_id: uuid.UUID,
        on_submitted: Optional[Callable[[], None]] = None,
    ):
        self.client = client
        self.booking_id = booking_id
        self.on_submitted = on_submitted
        self.rating = 0
        self.comment = ""
        self.error: Optional[str] = None
        self.submitting = False
        self.done = False

    @property
    def visible(self) -> bool:
        return not self.done

    async def load(self) -> None:
        """Hide the form when this booking already has a review."""
        try:
            self.done = await self.client.review_exists(self.booking_id)
        except BackendError as e:
            logger.info(f"Review lookup for {self.booking_id} failed: {e.message}")

    def validate(self) -> Optional[str]:
        # bool is an int subclass; True must not pass as one star
        if isinstance(self.rating, bool) or not isinstance(self.rating, int) or not 1 <= self.rating <= 5:
            return "Please select a rating (1-5)."
        if not self.comment.strip():
            return "Please write a short review."
        return None

    async def submit(self) -> bool:
        self.error = self.validate()
        if self.error:
            return False

        self.submitting = True
        try:
            await self.client.create_review(self.booking_id, self.rating, self.comment.strip())
        except BackendError as e:
            self.error = e.message
            return False
        finally:
            self.submitting = False

        self.done = True
        if self.on_submitted:
            self.on_submitted()
        return True
