"""
Admission Controller: credit reservation before any paid processing step.

Every operation is a single conditional UPDATE whose rowcount decides the
outcome, so concurrent workers cannot over-reserve or double-warn:

- reserve:   emails_used = emails_used + 1
             WHERE status = 'active' AND (emails_limit IS NULL OR emails_used < emails_limit)
- warn slot: last_credits_warning_at = now
             WHERE last_credits_warning_at IS NULL OR last_credits_warning_at < now - interval
- extra pkg: pending_extra_emails = 0 WHERE pending_extra_emails >= package_size

The extra package charge is fire-and-forget: it is scheduled as a
background task and never blocks or fails message processing.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import or_, update

from support_pipeline.integrations.billing import ExtraPackageBiller
from support_pipeline.integrations.exceptions import IntegrationError
from support_pipeline.integrations.notifications import ShopNotifier
from support_pipeline.models.enums import UserStatus
from support_pipeline.models.mail_models import MailboxCredentials
from support_pipeline.models.pipeline_models import ShopPolicy
from support_pipeline.monitoring.metrics import (
    credit_reservations_total,
    credit_warnings_sent_total,
    extra_package_charges_total,
)
from support_pipeline.persistence.database import Database
from support_pipeline.persistence.tables import MessageRow, UserRow, utc_now

logger = structlog.get_logger(__name__)


class AdmissionController:
    """
    Credit gate for the processing state machine.

    Responsibilities:
    - Atomically reserve one credit per message (at most once per message)
    - Throttle owner warnings to one per interval
    - Count over-quota messages and trigger extra package billing

    Does NOT handle:
    - Raising quotas (billing webhooks, out of scope)
    - Refunds: a reserved credit stays spent even if a later stage fails
    """

    def __init__(
        self,
        database: Database,
        notifier: Optional[ShopNotifier] = None,
        biller: Optional[ExtraPackageBiller] = None,
        warning_interval_minutes: int = 60,
        extra_package_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.database = database
        self.notifier = notifier
        self.biller = biller
        self.warning_interval = timedelta(minutes=warning_interval_minutes)
        self.extra_package_size = extra_package_size
        self.clock = clock
        self._background: set[asyncio.Task] = set()

    async def try_reserve_credit(self, user_id: str) -> bool:
        """Compare-and-increment the user's usage counter."""
        async with self.database.session() as session:
            result = await session.execute(self._reserve_statement(user_id))
        reserved = result.rowcount == 1
        credit_reservations_total.labels(result="reserved" if reserved else "denied").inc()
        return reserved

    async def reserve_for_message(self, user_id: str, message_id: str) -> bool:
        """
        Reserve a credit for one message, at most once.

        The message's credit_reserved_at stamp and the usage increment
        commit together; a retried attempt that finds the stamp set
        returns True without spending again.
        """
        now = self.clock()
        async with self.database.session() as session:
            stamped = await session.execute(
                update(MessageRow)
                .where(MessageRow.id == message_id, MessageRow.credit_reserved_at.is_(None))
                .values(credit_reserved_at=now)
            )
            if stamped.rowcount == 0:
                logger.debug("Credit already reserved for message", message_id=message_id)
                return True

            reserved = await session.execute(self._reserve_statement(user_id))
            if reserved.rowcount != 1:
                await session.rollback()
                credit_reservations_total.labels(result="denied").inc()
                logger.info("Credit reservation denied", user_id=user_id, message_id=message_id)
                return False

        credit_reservations_total.labels(result="reserved").inc()
        return True

    @staticmethod
    def _reserve_statement(user_id: str):
        return (
            update(UserRow)
            .where(
                UserRow.id == user_id,
                UserRow.status == UserStatus.ACTIVE.value,
                or_(UserRow.emails_limit.is_(None), UserRow.emails_used < UserRow.emails_limit),
            )
            .values(emails_used=UserRow.emails_used + 1)
        )

    async def claim_warning_slot(self, user_id: str) -> bool:
        """True for exactly one caller per warning interval."""
        now = self.clock()
        async with self.database.session() as session:
            result = await session.execute(
                update(UserRow)
                .where(
                    UserRow.id == user_id,
                    or_(
                        UserRow.last_credits_warning_at.is_(None),
                        UserRow.last_credits_warning_at < now - self.warning_interval,
                    ),
                )
                .values(
                    last_credits_warning_at=now,
                    credits_warning_count=UserRow.credits_warning_count + 1,
                )
            )
        return result.rowcount == 1

    async def notify_credits_exhausted(
        self,
        user: UserRow,
        policy: ShopPolicy,
        credentials: Optional[MailboxCredentials],
    ) -> bool:
        """
        Send the owner warning if this interval's slot is free.

        A failed send is logged and not retried until the next interval.

        Returns:
            True if a warning email was sent
        """
        if self.notifier is None or credentials is None:
            return False
        if not await self.claim_warning_slot(user.id):
            logger.debug("Credits warning throttled", user_id=user.id)
            return False

        try:
            await self.notifier.send_credits_warning(
                credentials,
                policy,
                owner_email=user.email,
                owner_name=user.name,
                emails_used=user.emails_used,
                emails_limit=user.emails_limit,
            )
        except IntegrationError as e:
            logger.error("Failed to send credits warning", user_id=user.id, error=str(e))
            return False

        credit_warnings_sent_total.inc()
        logger.info("Credits warning sent", user_id=user.id, shop_id=policy.shop_id)
        return True

    async def record_over_quota(self, user_id: str) -> bool:
        """
        Count one message parked for credits; trigger a charge at the threshold.

        Returns:
            True if an extra package charge was scheduled
        """
        async with self.database.session() as session:
            await session.execute(
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(pending_extra_emails=UserRow.pending_extra_emails + 1)
            )
            reset = await session.execute(
                update(UserRow)
                .where(UserRow.id == user_id, UserRow.pending_extra_emails >= self.extra_package_size)
                .values(pending_extra_emails=0)
            )
        if reset.rowcount != 1:
            return False

        if self.biller is None:
            logger.warning("Extra package threshold reached but no biller configured", user_id=user_id)
            extra_package_charges_total.labels(outcome="skipped").inc()
            return False

        task = asyncio.create_task(self._charge(user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info("Extra package charge scheduled", user_id=user_id, package_size=self.extra_package_size)
        return True

    async def _charge(self, user_id: str) -> None:
        try:
            await self.biller.charge(user_id, self.extra_package_size)
        except IntegrationError as e:
            extra_package_charges_total.labels(outcome="failed").inc()
            logger.error("Extra package charge failed", user_id=user_id, error=str(e))
            return
        extra_package_charges_total.labels(outcome="charged").inc()
        logger.info("Extra package charged", user_id=user_id)

    async def wait_background(self) -> None:
        """Await scheduled charges (end of a run, before the event loop closes)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
