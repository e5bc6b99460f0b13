from __future__ import annotations

import asyncio
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from authkernel.logging import get_logger, hash_identifier
from authkernel.service.errors import TicketExpiredOrUsedError, UnknownTokenError
from authkernel.storage.models import Account, VerificationTicket

logger = get_logger(__name__)


class VerificationSender(Protocol):
    def send_email_verification(
        self, to_email: str, verify_url: str, expires_in_minutes: int
    ) -> bool: ...


class VerificationLedger:
    """Single-use, time-boxed email verification tickets."""

    def __init__(
        self,
        store,
        sender: Optional[VerificationSender],
        *,
        base_url: str,
        ttl_seconds: int = 1800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.sender = sender
        self.base_url = base_url
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def link_for(self, token: str) -> str:
        return f"{self.base_url}?token={token}"

    async def issue(self, account: Account) -> VerificationTicket:
        token = secrets.token_urlsafe(32)
        ticket = self.store.create_verification_ticket(
            account.id, token, self._now() + timedelta(seconds=self.ttl_seconds)
        )
        await self._deliver(account, ticket)
        return ticket

    async def _deliver(self, account: Account, ticket: VerificationTicket) -> None:
        # The ticket stays valid whatever happens here
        verify_url = self.link_for(ticket.token)
        if self.sender is None:
            logger.info(
                "verification_link_not_sent",
                account_id=account.id,
                ticket_id=ticket.id,
                verify_url_hash=hash_identifier(verify_url),
            )
            return
        try:
            # SMTP blocks; keep it off the event loop
            delivered = await asyncio.to_thread(
                self.sender.send_email_verification,
                account.email,
                verify_url,
                max(1, self.ttl_seconds // 60),
            )
        except Exception as exc:
            logger.error(
                "verification_delivery_failed",
                account_id=account.id,
                email_hash=hash_identifier(account.email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning(
                "verification_delivery_failed",
                account_id=account.id,
                email_hash=hash_identifier(account.email),
            )

    def redeem(self, token: str) -> Account:
        ticket = self.store.get_verification_ticket(token)
        if ticket is None:
            raise UnknownTokenError("unknown verification token")
        now = self._now()
        if not ticket.is_live(now):
            raise TicketExpiredOrUsedError("verification token expired or already used")
        account = self.store.redeem_verification_ticket(token, now)
        if account is None:
            # Lost a race with a concurrent redemption
            raise TicketExpiredOrUsedError("verification token expired or already used")
        return account
