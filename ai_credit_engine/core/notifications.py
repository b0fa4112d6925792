"""
Notification trigger.

Derives notification requests from balance transitions and hands them to a
sink. Nothing is delivered from here; the delivery collaborator drains the
outbox table on its own schedule.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from ai_credit_engine.storage.models import NotificationRequest, utc_now

logger = logging.getLogger(__name__)

TEAM_LINK = "/team"

CREDITS_LOW = "credits_low"
CREDITS_ALLOCATED = "credits_allocated"
CREDITS_RECLAIMED = "credits_reclaimed"


def crossed_threshold(before: int, after: int, allocated: int, pct: Union[Decimal, float]) -> bool:
    """Whether a balance just dropped below ``pct`` of its allocation.

    Edge-triggered: True only for the transition from at-or-above the
    threshold to below it, so repeated deductions under the threshold stay
    silent.

    Args:
        before: Remaining credits before the deduction
        after: Remaining credits after the deduction
        allocated: Credits allocated in total
        pct: Threshold as a fraction of ``allocated`` (0.2 for 20%)

    Returns:
        True if this transition crossed the threshold
    """
    if allocated <= 0:
        return False
    threshold = Decimal(allocated) * Decimal(str(pct))
    return Decimal(before) >= threshold and Decimal(after) < threshold


def _feature_label(feature: str) -> str:
    return feature.replace("_", " ")


def _pct_label(pct: Union[Decimal, float]) -> str:
    return f"{Decimal(str(pct)) * 100:.0f}%"


class NotificationSink:
    """Destination for notification requests."""

    def send(self, request: NotificationRequest) -> None:
        raise NotImplementedError


class InMemoryNotificationSink(NotificationSink):
    """Collects requests in a list. Used by tests and the demo."""

    def __init__(self):
        self.requests: List[NotificationRequest] = []

    def send(self, request: NotificationRequest) -> None:
        self.requests.append(request)

    def of_type(self, notification_type: str) -> List[NotificationRequest]:
        return [r for r in self.requests if r.type == notification_type]

    def clear(self) -> None:
        self.requests.clear()


class OutboxNotificationSink(NotificationSink):
    """Persists requests to the ``notification_request`` table."""

    def __init__(self, store):
        self.store = store

    def send(self, request: NotificationRequest) -> None:
        self.store.enqueue_notification(request)


class NotificationTrigger:
    """Builds notification requests and hands them to a sink.

    Sink failures are logged and swallowed: a failed notification must never
    undo or fail the credit operation that caused it.
    """

    def __init__(self, sink: NotificationSink, threshold_pct: Union[Decimal, float] = Decimal("0.20")):
        self.sink = sink
        self.threshold_pct = threshold_pct

    def _emit(self, request: NotificationRequest) -> bool:
        try:
            self.sink.send(request)
        except Exception as e:
            logger.error(
                f"[NOTIFY] Failed to emit {request.type} to {request.user_id} in {request.org_id}: {e}",
                exc_info=True
            )
            return False
        logger.debug(f"[NOTIFY] Emitted {request.type} to {request.user_id}")
        return True

    def member_deducted(
        self,
        org_id: str,
        user_id: str,
        feature: str,
        before: int,
        after: int,
        allocated: int,
        admin_user_ids: Iterable[str] = (),
        member_name: Optional[str] = None,
    ) -> List[NotificationRequest]:
        """Emit ``credits_low`` to the member and every owner/admin on a crossing.

        Returns:
            Requests successfully handed to the sink (empty when nothing crossed)
        """
        if not crossed_threshold(before, after, allocated, self.threshold_pct):
            return []

        label = _feature_label(feature)
        pct = _pct_label(self.threshold_pct)
        now = utc_now()
        requests = [NotificationRequest(
            user_id=user_id,
            org_id=org_id,
            type=CREDITS_LOW,
            title="Credits running low",
            body=f"Your {label} credits are below {pct}. Contact your team admin for a top-up.",
            link=TEAM_LINK,
            created_at=now
        )]
        for admin_id in admin_user_ids:
            if admin_id == user_id:
                continue
            requests.append(NotificationRequest(
                user_id=admin_id,
                org_id=org_id,
                type=CREDITS_LOW,
                title="Team member credits low",
                body=f"{member_name or 'A team member'}'s {label} credits are below {pct}.",
                link=TEAM_LINK,
                created_at=now
            ))

        logger.info(
            f"[NOTIFY] {user_id} crossed the low-balance threshold for {feature} "
            f"({before} -> {after} of {allocated})"
        )
        return [r for r in requests if self._emit(r)]

    def credits_allocated(self, org_id: str, user_id: str, feature: str, amount: int) -> bool:
        return self._emit(NotificationRequest(
            user_id=user_id,
            org_id=org_id,
            type=CREDITS_ALLOCATED,
            title="Credits allocated",
            body=f"You've been allocated {amount} credits for {_feature_label(feature)}.",
            link=TEAM_LINK,
            created_at=utc_now()
        ))

    def credits_reclaimed(self, org_id: str, user_id: str, feature: str, amount: int) -> bool:
        return self._emit(NotificationRequest(
            user_id=user_id,
            org_id=org_id,
            type=CREDITS_RECLAIMED,
            title="Credits reclaimed",
            body=f"{amount} of your {_feature_label(feature)} credits were returned to the team pool.",
            link=TEAM_LINK,
            created_at=utc_now()
        ))
