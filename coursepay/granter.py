import logging
from typing import Callable, Optional

from coursepay.ledger import GrantStore
from coursepay.types import GrantResult, IntentRecord

logger = logging.getLogger(__name__)


def _run_now(func, *args, **kwargs):
    return func(*args, **kwargs)


class AccessGranter:
    """Turns a confirmed payment into a course-access grant, at most once per (buyer, course)."""

    def __init__(self, grants: GrantStore, effects=None, dispatch: Optional[Callable] = None):
        self._grants = grants
        self._effects = effects
        self._dispatch = dispatch or _run_now

    def grant(self, intent: IntentRecord) -> GrantResult:
        created = self._grants.insert_grant_if_absent(intent.buyer_id, intent.course_id, intent.id)
        if not created:
            logger.info(
                f"Buyer {intent.buyer_id} already holds course {intent.course_id}; "
                f"intent {intent.id} granted nothing"
            )
            return GrantResult(created=False)

        logger.info(f"Access granted: buyer {intent.buyer_id}, course {intent.course_id}, intent {intent.id}")
        if self._effects is not None:
            try:
                self._dispatch(self._effects.run, intent)
            except Exception as err:
                logger.error(f"Could not dispatch post-grant side effects for intent {intent.id}: {err}")
        return GrantResult(created=True)
