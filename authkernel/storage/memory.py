from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    Account,
    ActivityEvent,
    SocialLink,
    VerificationTicket,
    utcnow,
)


class MemoryStore:
    """In-process credential store.

    When ``fs_root`` is given, every mutation is written to
    ``{fs_root}/state/memory_store.json`` and reloaded on construction so a
    restarted dev process keeps its accounts.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.roles: set[str] = set()
        self.tickets: Dict[str, VerificationTicket] = {}
        self.social_links: List[SocialLink] = []
        self.activity: List[ActivityEvent] = []
        self._account_seq = 1
        self._ticket_seq = 1
        self._link_seq = 1
        self._activity_seq = 1
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_loaded",
                    accounts=len(self.accounts),
                    tickets=len(self.tickets),
                )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # -- accounts -----------------------------------------------------------

    def _find_by_email(self, email: str) -> Optional[Account]:
        needle = email.strip().lower()
        return next(
            (a for a in self.accounts.values() if a.email.lower() == needle), None
        )

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        email_verified: bool = False,
    ) -> Account:
        with self._data_lock:
            if self._find_by_email(email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=self._account_seq,
                email=email,
                password_hash=password_hash,
                email_verified=email_verified,
                display_name=display_name,
                roles=set(roles or ()),
                created_at=now,
                updated_at=now,
            )
            self._account_seq += 1
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return self._find_by_email(email)

    def mark_email_verified(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def add_role(self, account_id: int, role: str) -> Optional[Account]:
        with self._data_lock:
            if role not in self.roles:
                raise ConstraintViolation("role not found", {"role": role})
            account = self.accounts.get(account_id)
            if not account:
                return None
            if role not in account.roles:
                account.roles.add(role)
                account.updated_at = utcnow()
                self._persist_state()
            return account

    # -- roles --------------------------------------------------------------

    def seed_roles(self, names: Iterable[str]) -> List[str]:
        """Create any missing roles and return the names actually added."""
        with self._data_lock:
            created = [name for name in names if name not in self.roles]
            if created:
                self.roles.update(created)
                self._persist_state()
            return created

    def list_roles(self) -> List[str]:
        with self._data_lock:
            return sorted(self.roles)

    # -- verification tickets -----------------------------------------------

    def create_verification_ticket(
        self, account_id: int, token: str, expires_at: datetime
    ) -> VerificationTicket:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for ticket", {"account_id": account_id}
                )
            if token in self.tickets:
                raise ConstraintViolation("ticket token already exists", {"field": "token"})
            ticket = VerificationTicket(
                id=self._ticket_seq,
                account_id=account_id,
                token=token,
                expires_at=expires_at,
            )
            self._ticket_seq += 1
            self.tickets[token] = ticket
            self._persist_state()
            return ticket

    def get_verification_ticket(self, token: str) -> Optional[VerificationTicket]:
        with self._data_lock:
            return self.tickets.get(token)

    def redeem_verification_ticket(
        self, token: str, now: datetime
    ) -> Optional[Account]:
        """Mark the ticket used and its account verified in one step.

        Returns None when the ticket is missing, already used or expired at
        ``now``; nothing is changed in that case.
        """
        with self._data_lock:
            ticket = self.tickets.get(token)
            if ticket is None or not ticket.is_live(now):
                return None
            account = self.accounts.get(ticket.account_id)
            if account is None:
                return None
            ticket.used = True
            account.email_verified = True
            account.updated_at = utcnow()
            self._persist_state()
            return account

    # -- social links -------------------------------------------------------

    def create_social_link(
        self,
        account_id: int,
        provider: str,
        provider_subject_id: str,
        provider_email: Optional[str] = None,
    ) -> SocialLink:
        with self._data_lock:
            for existing in self.social_links:
                if (
                    existing.provider == provider
                    and existing.provider_subject_id == provider_subject_id
                ):
                    raise ConstraintViolation(
                        "social link already exists",
                        {"provider": provider, "field": "provider_subject_id"},
                    )
            link = SocialLink(
                id=self._link_seq,
                account_id=account_id,
                provider=provider,
                provider_subject_id=provider_subject_id,
                provider_email=provider_email,
            )
            self._link_seq += 1
            self.social_links.append(link)
            self._persist_state()
            return link

    def get_account_by_social_link(
        self, provider: str, provider_subject_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            for link in self.social_links:
                if (
                    link.provider == provider
                    and link.provider_subject_id == provider_subject_id
                ):
                    return self.accounts.get(link.account_id)
            return None

    # -- activity -----------------------------------------------------------

    def record_activity(
        self, account_id: Optional[int], type: str, message: Optional[str] = None
    ) -> ActivityEvent:
        with self._data_lock:
            event = ActivityEvent(
                id=self._activity_seq,
                account_id=account_id,
                type=type,
                message=message,
            )
            self._activity_seq += 1
            self.activity.append(event)
            self._persist_state()
            return event

    def list_activity(
        self, account_id: int, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ActivityEvent], int]:
        """Newest-first page of an account's events plus the total count."""
        with self._data_lock:
            events = [e for e in self.activity if e.account_id == account_id]
            events.sort(key=lambda e: (e.occurred_at, e.id), reverse=True)
            return events[offset : offset + limit], len(events)

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "roles": sorted(self.roles),
            "tickets": [self._serialize_ticket(t) for t in self.tickets.values()],
            "social_links": [self._serialize_link(link) for link in self.social_links],
            "activity": [self._serialize_event(e) for e in self.activity],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            int(a["id"]): self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.roles = set(data.get("roles", []))
        self.tickets = {
            t["token"]: self._deserialize_ticket(t) for t in data.get("tickets", [])
        }
        self.social_links = [
            self._deserialize_link(link) for link in data.get("social_links", [])
        ]
        self.activity = [self._deserialize_event(e) for e in data.get("activity", [])]
        self._account_seq = max(self.accounts, default=0) + 1
        self._ticket_seq = max((t.id for t in self.tickets.values()), default=0) + 1
        self._link_seq = max((link.id for link in self.social_links), default=0) + 1
        self._activity_seq = max((e.id for e in self.activity), default=0) + 1
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "email_verified": account.email_verified,
            "display_name": account.display_name,
            "roles": sorted(account.roles),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            email_verified=bool(data.get("email_verified", False)),
            display_name=data.get("display_name"),
            roles=set(data.get("roles", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_ticket(self, ticket: VerificationTicket) -> dict:
        return {
            "id": ticket.id,
            "account_id": ticket.account_id,
            "token": ticket.token,
            "expires_at": self._serialize_datetime(ticket.expires_at),
            "used": ticket.used,
            "created_at": self._serialize_datetime(ticket.created_at),
        }

    def _deserialize_ticket(self, data: dict) -> VerificationTicket:
        return VerificationTicket(
            id=int(data["id"]),
            account_id=int(data["account_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_link(self, link: SocialLink) -> dict:
        return {
            "id": link.id,
            "account_id": link.account_id,
            "provider": link.provider,
            "provider_subject_id": link.provider_subject_id,
            "provider_email": link.provider_email,
            "linked_at": self._serialize_datetime(link.linked_at),
        }

    def _deserialize_link(self, data: dict) -> SocialLink:
        return SocialLink(
            id=int(data["id"]),
            account_id=int(data["account_id"]),
            provider=data["provider"],
            provider_subject_id=data["provider_subject_id"],
            provider_email=data.get("provider_email"),
            linked_at=self._deserialize_datetime(data["linked_at"]),
        )

    def _serialize_event(self, event: ActivityEvent) -> dict:
        return {
            "id": event.id,
            "account_id": event.account_id,
            "type": event.type,
            "message": event.message,
            "occurred_at": self._serialize_datetime(event.occurred_at),
        }

    def _deserialize_event(self, data: dict) -> ActivityEvent:
        account_id = data.get("account_id")
        return ActivityEvent(
            id=int(data["id"]),
            account_id=int(account_id) if account_id is not None else None,
            type=data["type"],
            message=data.get("message"),
            occurred_at=self._deserialize_datetime(data["occurred_at"]),
        )
