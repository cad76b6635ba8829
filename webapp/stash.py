"""
webapp/stash.py
Post-auth resume stash: a single-slot queue in per-tab storage.

`put` overwrites whatever was waiting; `consume` reads and clears in one
step so an intent can be replayed at most once. Payloads are tagged by
`type`; anything unparseable is discarded rather than replayed.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Literal, MutableMapping, Optional, Union

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

REDIRECT_KEY = "postAuthRedirect"
ACTION_KEY = "aw.postAuthAction"


class ResumeBooking(BaseModel):
    type: Literal["resume_booking"] = "resume_booking"
    mentor_id: uuid.UUID
    slot_id: Optional[uuid.UUID] = None
    package_id: Optional[uuid.UUID] = None


# New resume kinds are added here and to ACTION_TYPES
PostAuthAction = Union[ResumeBooking]

ACTION_TYPES: dict[str, type[BaseModel]] = {
    "resume_booking": ResumeBooking,
}


@dataclass
class StashedResume:
    action: Optional[PostAuthAction]
    return_url: Optional[str]


def parse_action(raw: str) -> Optional[PostAuthAction]:
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Discarding unreadable post-auth action")
        return None
    if not isinstance(data, dict):
        return None
    model = ACTION_TYPES.get(data.get("type"))
    if model is None:
        logger.warning(f"Discarding unknown post-auth action type: {data.get('type')!r}")
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Discarding malformed post-auth action: {e}")
        return None


class ResumeStash:
    def __init__(self, storage: MutableMapping[str, str]):
        self.storage = storage

    def put(self, action: PostAuthAction, return_url: Optional[str] = None) -> None:
        self.storage[ACTION_KEY] = action.model_dump_json()
        if return_url:
            self.storage[REDIRECT_KEY] = return_url

    def put_redirect(self, return_url: str) -> None:
        if return_url:
            self.storage[REDIRECT_KEY] = return_url

    def consume_action(self) -> Optional[PostAuthAction]:
        raw = self.storage.pop(ACTION_KEY, None)
        if not raw:
            return None
        return parse_action(raw)

    def consume_redirect(self) -> Optional[str]:
        return self.storage.pop(REDIRECT_KEY, None) or None

    def consume(self) -> StashedResume:
        return StashedResume(action=self.consume_action(), return_url=self.consume_redirect())

    def clear(self) -> None:
        self.storage.pop(ACTION_KEY, None)
        self.storage.pop(REDIRECT_KEY, None)
