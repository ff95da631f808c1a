"""
Integration tests for the key registry.

Tests cover:
- One primary key per user across create/update sequences
- Alias uniqueness per user
- Delete guard while envelopes reference a key
- KMS compensation when the database write fails
"""
import os
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from filevault.models.key_encryption_key import KeyEncryptionKey
from filevault.services import envelope_store
from filevault.services.errors import (
    AliasConflictError,
    KeyInUseError,
    KeyNotFoundError,
    ProviderUnavailableError,
)
from filevault.services.key_registry import ExpiryPolicy, kms_alias_name
from filevault.services.kms.base import WrappedKey
from tests.conftest import make_encrypted_file


async def primary_key_ids(db, user_id) -> list:
    result = await db.execute(
        select(KeyEncryptionKey.id).where(
            KeyEncryptionKey.user_id == user_id,
            KeyEncryptionKey.is_primary.is_(True),
        )
    )
    return list(result.scalars().all())


# =============================================================================
# Create
# =============================================================================


@pytest.mark.asyncio
async def test_create_key_provisions_kms_key_and_alias(db_session, registry, kms, alice):
    """A new KEK is backed by a KMS key reachable through its namespaced alias."""
    kek = await registry.create_key(
        db_session, alice.id, alice.email, "laptop", description="Work laptop"
    )

    assert kek.alias == "laptop"
    assert kek.is_primary is False
    assert kek.expires_at is None
    assert kms.resolve_alias(kms_alias_name(alice.id, "laptop")) == kek.kms_key_id
    assert kms._descriptions[kek.kms_key_id] == "Work laptop"


@pytest.mark.asyncio
async def test_create_key_with_expiry(db_session, registry, alice):
    kek = await registry.create_key(
        db_session, alice.id, alice.email, "short-lived",
        expiry_policy=ExpiryPolicy.DAYS_30,
    )

    assert kek.expires_at is not None
    assert kek.is_expired is False


@pytest.mark.asyncio
async def test_only_one_primary_after_each_create(db_session, registry, alice):
    """Creating a primary key demotes the previous one."""
    alice_id = alice.id
    first = await registry.create_key(db_session, alice_id, alice.email, "k1", is_primary=True)
    first_id = first.id
    assert await primary_key_ids(db_session, alice_id) == [first_id]

    second = await registry.create_key(db_session, alice_id, alice.email, "k2", is_primary=True)
    assert await primary_key_ids(db_session, alice_id) == [second.id]

    await registry.create_key(db_session, alice_id, alice.email, "k3", is_primary=False)
    assert await primary_key_ids(db_session, alice_id) == [second.id]

    primary = await registry.get_primary_key(db_session, alice_id)
    assert primary.id == second.id


@pytest.mark.asyncio
async def test_only_one_primary_after_each_update(db_session, registry, alice):
    alice_id = alice.id
    k1 = await registry.create_key(db_session, alice_id, alice.email, "k1", is_primary=True)
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k3 = await registry.create_key(db_session, alice_id, alice.email, "k3")
    k1_id, k2_id, k3_id = k1.id, k2.id, k3.id

    for kek_id in (k2_id, k3_id, k1_id, k1_id, k2_id):
        await registry.update_key(db_session, alice_id, kek_id, is_primary=True)
        assert await primary_key_ids(db_session, alice_id) == [kek_id]


@pytest.mark.asyncio
async def test_primary_keys_are_per_user(db_session, registry, alice, bob):
    alice_key = await registry.create_key(db_session, alice.id, alice.email, "main", is_primary=True)
    bob_key = await registry.create_key(db_session, bob.id, bob.email, "main", is_primary=True)

    assert await primary_key_ids(db_session, alice.id) == [alice_key.id]
    assert await primary_key_ids(db_session, bob.id) == [bob_key.id]


@pytest.mark.asyncio
async def test_duplicate_alias_rejected(db_session, registry, kms, alice):
    await registry.create_key(db_session, alice.id, alice.email, "laptop")
    provisioned = len(kms._descriptions)

    with pytest.raises(AliasConflictError):
        await registry.create_key(db_session, alice.id, alice.email, "laptop")

    # Rejected before any KMS key was provisioned
    assert len(kms._descriptions) == provisioned


@pytest.mark.asyncio
async def test_create_key_discards_kms_key_when_db_write_fails(
    db_session, registry, kms, alice, monkeypatch
):
    """A KMS key whose record never lands is unaliased and scheduled for deletion."""
    alice_id, alice_email = alice.id, alice.email
    monkeypatch.setattr(
        db_session, "commit",
        AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down"))),
    )

    with pytest.raises(OperationalError):
        await registry.create_key(db_session, alice_id, alice_email, "laptop")

    monkeypatch.undo()
    assert kms.resolve_alias(kms_alias_name(alice_id, "laptop")) is None
    assert len(kms._pending_deletion) == 1
    assert list(await registry.list_keys(db_session, alice_id)) == []


@pytest.mark.asyncio
async def test_create_key_discards_kms_key_when_alias_fails(
    db_session, registry, kms, alice, monkeypatch
):
    monkeypatch.setattr(
        kms, "create_alias",
        AsyncMock(side_effect=ProviderUnavailableError("KMS down")),
    )

    with pytest.raises(ProviderUnavailableError):
        await registry.create_key(db_session, alice.id, alice.email, "laptop")

    assert len(kms._pending_deletion) == 1
    assert list(await registry.list_keys(db_session, alice.id)) == []


# =============================================================================
# Read / update
# =============================================================================


@pytest.mark.asyncio
async def test_get_key_of_other_user_is_not_found(db_session, registry, alice, bob):
    kek = await registry.create_key(db_session, alice.id, alice.email, "laptop")

    with pytest.raises(KeyNotFoundError):
        await registry.get_key(db_session, bob.id, kek.id)


@pytest.mark.asyncio
async def test_list_keys_newest_first(db_session, registry, alice):
    await registry.create_key(db_session, alice.id, alice.email, "old")
    await registry.create_key(db_session, alice.id, alice.email, "new")

    keys = await registry.list_keys(db_session, alice.id)

    assert [k.alias for k in keys] == ["new", "old"]


@pytest.mark.asyncio
async def test_rename_moves_kms_alias(db_session, registry, kms, alice):
    kek = await registry.create_key(db_session, alice.id, alice.email, "laptop")

    updated = await registry.update_key(
        db_session, alice.id, kek.id, alias="desktop", description="Moved"
    )

    assert updated.alias == "desktop"
    assert updated.description == "Moved"
    assert kms.resolve_alias(kms_alias_name(alice.id, "laptop")) is None
    assert kms.resolve_alias(kms_alias_name(alice.id, "desktop")) == kek.kms_key_id
    assert kms._descriptions[kek.kms_key_id] == "Moved"


@pytest.mark.asyncio
async def test_rename_to_taken_alias_rejected(db_session, registry, alice):
    await registry.create_key(db_session, alice.id, alice.email, "laptop")
    kek = await registry.create_key(db_session, alice.id, alice.email, "desktop")

    with pytest.raises(AliasConflictError):
        await registry.update_key(db_session, alice.id, kek.id, alias="laptop")


@pytest.mark.asyncio
async def test_failed_rename_restores_old_alias(db_session, registry, kms, alice, monkeypatch):
    kek = await registry.create_key(db_session, alice.id, alice.email, "laptop")
    kek_id, handle = kek.id, kek.kms_key_id
    old_alias = kms_alias_name(alice.id, "laptop")
    real_create_alias = kms.create_alias

    async def create_alias(alias_name, target):
        if alias_name.endswith("-desktop"):
            raise ProviderUnavailableError("KMS down")
        await real_create_alias(alias_name, target)

    monkeypatch.setattr(kms, "create_alias", create_alias)

    with pytest.raises(ProviderUnavailableError):
        await registry.update_key(db_session, alice.id, kek_id, alias="desktop")

    assert kms.resolve_alias(old_alias) == handle
    stored = await registry.get_key(db_session, alice.id, kek_id)
    assert stored.alias == "laptop"


# =============================================================================
# Delete
# =============================================================================


@pytest.mark.asyncio
async def test_delete_unused_key_schedules_kms_deletion(db_session, registry, kms, alice):
    kek = await registry.create_key(db_session, alice.id, alice.email, "laptop")
    kek_id, handle = kek.id, kek.kms_key_id

    deletion_date = await registry.delete_key(db_session, alice.id, kek_id)

    assert deletion_date is not None
    assert kms.is_pending_deletion(handle)
    assert kms.resolve_alias(kms_alias_name(alice.id, "laptop")) is None
    with pytest.raises(KeyNotFoundError):
        await registry.get_key(db_session, alice.id, kek_id)


@pytest.mark.asyncio
async def test_delete_key_in_use_fails_until_envelopes_removed(
    db_session, registry, engine, kms, alice
):
    """A key that still wraps a DEK cannot be deleted; once unused it can."""
    alice_id = alice.id
    kek = await registry.create_key(db_session, alice_id, alice.email, "main", is_primary=True)
    kek_id, handle = kek.id, kek.kms_key_id
    stored_file = await make_encrypted_file(db_session, engine, alice, os.urandom(32))
    file_id = stored_file.id

    with pytest.raises(KeyInUseError):
        await registry.delete_key(db_session, alice_id, kek_id)
    assert not kms.is_pending_deletion(handle)

    usage = await registry.get_usage(db_session, alice_id, kek_id)
    assert usage.file_count == 1
    assert usage.envelope_count == 1

    await envelope_store.delete_envelope(db_session, file_id, kek_id)
    await db_session.commit()

    await registry.delete_key(db_session, alice_id, kek_id)
    assert kms.is_pending_deletion(handle)


@pytest.mark.asyncio
async def test_delete_key_refused_by_foreign_key_for_late_envelope(
    db_session, registry, engine, kms, alice, monkeypatch
):
    """An envelope that lands after the usage check still blocks the delete, and the KMS key is untouched."""
    alice_id = alice.id
    kek = await registry.create_key(db_session, alice_id, alice.email, "main", is_primary=True)
    kek_id, handle = kek.id, kek.kms_key_id
    dek = os.urandom(32)
    stored_file = await make_encrypted_file(db_session, engine, alice, dek)
    file_id = stored_file.id
    monkeypatch.setattr(envelope_store, "is_kek_in_use", AsyncMock(return_value=False))

    with pytest.raises(KeyInUseError):
        await registry.delete_key(db_session, alice_id, kek_id)

    monkeypatch.undo()
    assert not kms.is_pending_deletion(handle)
    assert kms.resolve_alias(kms_alias_name(alice_id, "main")) == handle
    assert (await registry.get_key(db_session, alice_id, kek_id)).kms_key_id == handle

    envelope = await envelope_store.get_envelope(db_session, file_id, kek_id)
    unwrapped = await engine.unwrap_for_caller(
        db_session, kek_id, alice_id, WrappedKey(envelope.dek_ciphertext)
    )
    assert unwrapped == dek


@pytest.mark.asyncio
async def test_delete_key_restores_kms_key_when_commit_fails(
    db_session, registry, kms, alice, monkeypatch
):
    alice_id = alice.id
    kek = await registry.create_key(db_session, alice_id, alice.email, "laptop")
    kek_id, handle = kek.id, kek.kms_key_id
    monkeypatch.setattr(
        db_session, "commit",
        AsyncMock(side_effect=OperationalError("DELETE", {}, Exception("db down"))),
    )

    with pytest.raises(OperationalError):
        await registry.delete_key(db_session, alice_id, kek_id)

    monkeypatch.undo()
    assert not kms.is_pending_deletion(handle)
    assert kms.resolve_alias(kms_alias_name(alice_id, "laptop")) == handle
    assert (await registry.get_key(db_session, alice_id, kek_id)).id == kek_id


@pytest.mark.asyncio
async def test_delete_key_kept_when_kms_deletion_fails(
    db_session, registry, kms, alice, monkeypatch
):
    alice_id = alice.id
    kek = await registry.create_key(db_session, alice_id, alice.email, "laptop")
    kek_id, handle = kek.id, kek.kms_key_id
    monkeypatch.setattr(
        kms, "schedule_deletion",
        AsyncMock(side_effect=ProviderUnavailableError("KMS down")),
    )

    with pytest.raises(ProviderUnavailableError):
        await registry.delete_key(db_session, alice_id, kek_id)

    assert kms.resolve_alias(kms_alias_name(alice_id, "laptop")) == handle
    assert (await registry.get_key(db_session, alice_id, kek_id)).id == kek_id


@pytest.mark.asyncio
async def test_delete_key_of_other_user_is_not_found(db_session, registry, kms, alice, bob):
    kek = await registry.create_key(db_session, alice.id, alice.email, "laptop")

    with pytest.raises(KeyNotFoundError):
        await registry.delete_key(db_session, bob.id, kek.id)
    assert not kms.is_pending_deletion(kek.kms_key_id)
