from datetime import timedelta

import pytest

from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import utcnow


def test_memory_store_persists_accounts_tickets_and_links(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.seed_roles(["USER", "ADMIN"])
    account = store.create_account(
        "persist@example.com", "hash", display_name="Persist", roles=["USER"]
    )
    store.add_role(account.id, "ADMIN")
    ticket = store.create_verification_ticket(
        account.id, "ticket-token", utcnow() + timedelta(minutes=30)
    )
    store.create_social_link(account.id, "google", "sub-1", "persist@example.com")
    store.record_activity(account.id, "REGISTER", "registered")

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_account = reloaded.get_account(account.id)
    assert reloaded_account
    assert reloaded_account.roles == {"USER", "ADMIN"}
    assert reloaded_account.password_hash == "hash"
    assert reloaded.get_verification_ticket(ticket.token).account_id == account.id
    assert reloaded.get_account_by_social_link("google", "sub-1").id == account.id
    assert reloaded.list_roles() == ["ADMIN", "USER"]
    events, total = reloaded.list_activity(account.id)
    assert total == 1 and events[0].message == "registered"

    # Sequences continue after reload
    second = reloaded.create_account("second@example.com", "hash")
    assert second.id == account.id + 1


def test_email_uniqueness_is_case_insensitive():
    store = MemoryStore()
    store.create_account("Dup@Example.com", "hash")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_account("dup@example.COM", "hash")
    assert exc_info.value.detail == {"field": "email"}
    assert store.get_account_by_email("DUP@example.com").email == "Dup@Example.com"


def test_add_role_requires_seeded_role():
    store = MemoryStore()
    account = store.create_account("a@example.com", "hash")
    with pytest.raises(ConstraintViolation):
        store.add_role(account.id, "ADMIN")
    store.seed_roles(["ADMIN"])
    assert store.add_role(999, "ADMIN") is None
    assert store.add_role(account.id, "ADMIN").roles == {"ADMIN"}


def test_seed_roles_returns_only_new_names():
    store = MemoryStore()
    assert store.seed_roles(["USER", "ADMIN"]) == ["USER", "ADMIN"]
    assert store.seed_roles(["USER", "MANAGER"]) == ["MANAGER"]


def test_redeem_ticket_is_single_use():
    store = MemoryStore()
    account = store.create_account("a@example.com", "hash")
    now = utcnow()
    store.create_verification_ticket(account.id, "t", now + timedelta(minutes=1))

    assert store.redeem_verification_ticket("t", now).email_verified
    assert store.redeem_verification_ticket("t", now) is None


def test_redeem_expired_ticket_changes_nothing():
    store = MemoryStore()
    account = store.create_account("a@example.com", "hash")
    now = utcnow()
    store.create_verification_ticket(account.id, "t", now)

    assert store.redeem_verification_ticket("t", now) is None
    assert not store.get_account(account.id).email_verified
    assert not store.get_verification_ticket("t").used


def test_social_link_unique_per_provider_subject():
    store = MemoryStore()
    first = store.create_account("a@example.com", "hash")
    second = store.create_account("b@example.com", "hash")
    store.create_social_link(first.id, "github", "42")
    with pytest.raises(ConstraintViolation):
        store.create_social_link(second.id, "github", "42")
    store.create_social_link(second.id, "google", "42")
    assert store.get_account_by_social_link("google", "42").id == second.id


def test_list_activity_pages_newest_first():
    store = MemoryStore()
    account = store.create_account("a@example.com", "hash")
    for i in range(5):
        store.record_activity(account.id, "LOGIN", f"login {i}")
    store.record_activity(None, "LOGIN", "anonymous")

    events, total = store.list_activity(account.id, offset=1, limit=2)

    assert total == 5
    assert [e.message for e in events] == ["login 3", "login 2"]
