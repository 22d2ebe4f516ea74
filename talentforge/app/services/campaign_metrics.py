from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Connection

from talentforge.app.errors import StoreNotFoundError
from talentforge.app.models import CampaignSendRecord, CampaignSendStatus, SuppressionReason
from talentforge.app.payloads import (
    EMAIL_BOUNCED,
    EMAIL_CLICKED,
    EMAIL_COMPLAINED,
    EMAIL_DELIVERED,
    EMAIL_OPENED,
)
from talentforge.app.store import Store

logger = logging.getLogger("talentforge.campaign_metrics")


@dataclass(frozen=True)
class CounterRule:
    timestamp_column: str
    counter: str
    status: Optional[CampaignSendStatus]
    suppression: Optional[SuppressionReason] = None


COUNTER_RULES = {
    EMAIL_DELIVERED: CounterRule("delivered_at", "total_sent", CampaignSendStatus.delivered),
    EMAIL_OPENED: CounterRule("opened_at", "total_opened", CampaignSendStatus.opened),
    EMAIL_CLICKED: CounterRule("clicked_at", "total_clicked", CampaignSendStatus.clicked),
    EMAIL_BOUNCED: CounterRule(
        "bounced_at", "total_bounced", CampaignSendStatus.bounced, SuppressionReason.bounce
    ),
    EMAIL_COMPLAINED: CounterRule(
        "complained_at", "total_complained", None, SuppressionReason.complaint
    ),
}


class CampaignMetricsUpdater:
    """Applies first-occurrence email events to a send and its campaign counters.

    The timestamp column of each event kind doubles as the guard: the counter is
    bumped only by the update that moved that column from NULL, so redelivered or
    concurrently replayed events never count twice.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    def apply(
        self,
        conn: Connection,
        send: CampaignSendRecord,
        event_type: str,
        *,
        occurred_at: datetime,
        error_message: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> bool:
        """Return True when this event was the first of its kind for the send."""
        rule = COUNTER_RULES.get(event_type)
        if rule is None:
            return False

        extra = {"error_message": error_message} if error_message else None
        first = self.store.stamp_send_once(
            conn, send.id, rule.timestamp_column, occurred_at, extra_values=extra
        )
        if event_type == EMAIL_DELIVERED:
            self.store.coalesce_send_sent_at(conn, send.id, occurred_at)
        if not first:
            logger.info(
                "campaign_event_repeat send_id=%s event_type=%s", send.id, event_type
            )
            return False

        self.store.increment_campaign_counter(conn, send.campaign_id, rule.counter)
        if rule.status is not None:
            self.store.advance_send_status(conn, send.id, rule.status)
        if rule.suppression is not None:
            self._suppress(conn, send, rule.suppression, recipient)
        logger.info(
            "campaign_counter_incremented campaign_id=%s send_id=%s counter=%s",
            send.campaign_id,
            send.id,
            rule.counter,
        )
        return True

    def _suppress(
        self,
        conn: Connection,
        send: CampaignSendRecord,
        reason: SuppressionReason,
        recipient: Optional[str],
    ) -> None:
        campaign = self.store.get_campaign(send.campaign_id, conn=conn)
        try:
            email = self.store.get_candidate(send.candidate_id, conn=conn).email or recipient
        except StoreNotFoundError:
            email = recipient
        if not email:
            logger.warning(
                "suppression_skipped send_id=%s reason=%s detail=no_email", send.id, reason.value
            )
            return
        added = self.store.add_suppression(
            conn,
            company_id=campaign.company_id,
            email=email,
            reason=reason,
            source=send.id,
        )
        logger.info(
            "email_suppressed company_id=%s reason=%s added=%s",
            campaign.company_id,
            reason.value,
            added,
        )
