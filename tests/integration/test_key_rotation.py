"""
Integration tests for KEK rotation.

Tests cover:
- Full rotation with promotion of the target key
- Idempotent re-runs
- Convergence after a crash between writing the new envelope and deleting the old one
- Per-envelope failures reported without stopping the batch
"""
import os

import pytest
from sqlalchemy import select

from filevault.models.encrypted_dek import EncryptedDEK
from filevault.models.key_encryption_key import KeyEncryptionKey
from filevault.services import envelope_store
from filevault.services.errors import KeyNotFoundError, ProviderUnavailableError
from filevault.services.kms.base import KMSKeyHandle, WrappedKey
from tests.conftest import make_encrypted_file


async def envelope_keks(db, file_id) -> set:
    result = await db.execute(select(EncryptedDEK.kek_id).where(EncryptedDEK.file_id == file_id))
    return set(result.scalars().all())


async def primary_flags(db, *kek_ids) -> list:
    result = await db.execute(
        select(KeyEncryptionKey.id, KeyEncryptionKey.is_primary).where(
            KeyEncryptionKey.id.in_(kek_ids)
        )
    )
    flags = dict(result.all())
    return [flags[kek_id] for kek_id in kek_ids]


async def unwrap_envelope(db, engine, user_id, file_id, kek_id) -> bytes:
    envelope = await envelope_store.get_envelope(db, file_id, kek_id)
    return await engine.unwrap_for_caller(db, kek_id, user_id, WrappedKey(envelope.dek_ciphertext))


@pytest.fixture
async def k1(db_session, registry, alice):
    return await registry.create_key(db_session, alice.id, alice.email, "k1", is_primary=True)


# =============================================================================
# Rotation
# =============================================================================


@pytest.mark.asyncio
async def test_rotate_and_promote(db_session, engine, registry, rotation, alice, k1):
    """
    K1 primary, file F under K1; K2 becomes primary; rotating K1 -> K2 moves F
    to K2 with the same DEK and leaves K2 the only primary.
    """
    alice_id = alice.id
    k1_id = k1.id
    dek = os.urandom(32)
    stored_file = await make_encrypted_file(db_session, engine, alice, dek)
    file_id = stored_file.id
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2", is_primary=True)
    k2_id = k2.id

    summary = await rotation.rotate_kek_for_owner(
        db_session, alice_id, k1_id, k2_id, make_primary=True
    )

    assert (summary.total_to_rewrap, summary.rewrapped, summary.failed) == (1, 1, 0)
    assert summary.failures == []
    assert await envelope_store.get_envelope(db_session, file_id, k1_id) is None
    assert await unwrap_envelope(db_session, engine, alice_id, file_id, k2_id) == dek
    assert await primary_flags(db_session, k1_id, k2_id) == [False, True]

    retired = await registry.get_key(db_session, alice_id, k1_id)
    assert retired.rotated_at is not None


@pytest.mark.asyncio
async def test_rotate_promotes_non_primary_target(db_session, engine, registry, rotation, alice, k1):
    alice_id, k1_id = alice.id, k1.id
    await make_encrypted_file(db_session, engine, alice, os.urandom(32))
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k2_id = k2.id

    await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id, make_primary=True)

    assert await primary_flags(db_session, k1_id, k2_id) == [False, True]


@pytest.mark.asyncio
async def test_rotate_without_promotion_keeps_primary(db_session, engine, registry, rotation, alice, k1):
    alice_id, k1_id = alice.id, k1.id
    await make_encrypted_file(db_session, engine, alice, os.urandom(32))
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k2_id = k2.id

    await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)

    assert await primary_flags(db_session, k1_id, k2_id) == [True, False]
    # K1 no longer wraps anything and can be deleted
    await registry.delete_key(db_session, alice_id, k1_id)


@pytest.mark.asyncio
async def test_second_rotation_is_a_no_op(db_session, engine, registry, rotation, alice, k1):
    alice_id, k1_id = alice.id, k1.id
    dek = os.urandom(32)
    stored_file = await make_encrypted_file(db_session, engine, alice, dek)
    file_id = stored_file.id
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k2_id = k2.id

    await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)
    ciphertext = (await envelope_store.get_envelope(db_session, file_id, k2_id)).dek_ciphertext

    summary = await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)

    assert (summary.total_to_rewrap, summary.rewrapped, summary.failed) == (0, 0, 0)
    assert await envelope_keks(db_session, file_id) == {k2_id}
    envelope = await envelope_store.get_envelope(db_session, file_id, k2_id)
    assert envelope.dek_ciphertext == ciphertext


@pytest.mark.asyncio
async def test_rotation_converges_after_crash(db_session, engine, registry, rotation, alice, k1):
    """
    Crash after the new envelope was committed but before the old one was
    deleted: both envelopes decrypt to the DEK, and a re-run leaves one.
    """
    alice_id, k1_id = alice.id, k1.id
    dek = os.urandom(32)
    stored_file = await make_encrypted_file(db_session, engine, alice, dek)
    file_id = stored_file.id
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k2_id, k2_handle = k2.id, k2.kms_key_id

    old = await envelope_store.get_envelope(db_session, file_id, k1_id)
    rewrapped = await engine.rewrap(
        KMSKeyHandle(k1.kms_key_id), KMSKeyHandle(k2_handle), WrappedKey(old.dek_ciphertext)
    )
    await envelope_store.upsert_envelope(db_session, file_id, k2_id, rewrapped, old.iv)
    await db_session.commit()

    assert await envelope_keks(db_session, file_id) == {k1_id, k2_id}
    assert await unwrap_envelope(db_session, engine, alice_id, file_id, k1_id) == dek
    assert await unwrap_envelope(db_session, engine, alice_id, file_id, k2_id) == dek

    summary = await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)

    assert (summary.total_to_rewrap, summary.rewrapped, summary.failed) == (1, 1, 0)
    assert await envelope_keks(db_session, file_id) == {k2_id}
    assert await unwrap_envelope(db_session, engine, alice_id, file_id, k2_id) == dek


@pytest.mark.asyncio
async def test_failed_envelope_keeps_old_key_usable(
    db_session, engine, registry, rotation, alice, k1, monkeypatch
):
    """One envelope failing is reported; the rest rotate and the failure can be retried."""
    alice_id, k1_id = alice.id, k1.id
    dek_a, dek_b = os.urandom(32), os.urandom(32)
    file_a = await make_encrypted_file(db_session, engine, alice, dek_a, "a.pdf")
    file_b = await make_encrypted_file(db_session, engine, alice, dek_b, "b.pdf")
    file_a_id, file_b_id = file_a.id, file_b.id
    broken_ciphertext = (await envelope_store.get_envelope(db_session, file_b_id, k1_id)).dek_ciphertext
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k2_id = k2.id

    real_rewrap = engine.rewrap

    async def rewrap(source, target, ciphertext):
        if ciphertext == broken_ciphertext:
            raise ProviderUnavailableError("KMS unreachable")
        return await real_rewrap(source, target, ciphertext)

    monkeypatch.setattr(engine, "rewrap", rewrap)

    summary = await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)

    assert (summary.total_to_rewrap, summary.rewrapped, summary.failed) == (2, 1, 1)
    assert summary.failures[0].file_id == file_b_id
    assert summary.failures[0].error_code == "provider_unavailable"
    assert await envelope_keks(db_session, file_a_id) == {k2_id}
    assert await envelope_keks(db_session, file_b_id) == {k1_id}
    assert await unwrap_envelope(db_session, engine, alice_id, file_b_id, k1_id) == dek_b

    monkeypatch.undo()
    retry = await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)

    assert (retry.total_to_rewrap, retry.rewrapped, retry.failed) == (1, 1, 0)
    assert await unwrap_envelope(db_session, engine, alice_id, file_b_id, k2_id) == dek_b


@pytest.mark.asyncio
async def test_rotation_leaves_other_users_envelopes(
    db_session, engine, registry, sharing, rotation, alice, bob, k1
):
    """Rotating the owner's key does not touch recipients' envelopes."""
    alice_id, bob_id, k1_id = alice.id, bob.id, k1.id
    bob_key = await registry.create_key(db_session, bob_id, bob.email, "main", is_primary=True)
    bob_key_id = bob_key.id
    dek = os.urandom(32)
    stored_file = await make_encrypted_file(db_session, engine, alice, dek)
    file_id = stored_file.id
    await sharing.share_with_recipients(db_session, alice_id, [file_id], [bob_id])
    k2 = await registry.create_key(db_session, alice_id, alice.email, "k2")
    k2_id = k2.id

    await rotation.rotate_kek_for_owner(db_session, alice_id, k1_id, k2_id)

    assert await envelope_keks(db_session, file_id) == {k2_id, bob_key_id}
    assert await unwrap_envelope(db_session, engine, bob_id, file_id, bob_key_id) == dek


# =============================================================================
# Validation
# =============================================================================


@pytest.mark.asyncio
async def test_rotate_to_same_key_rejected(db_session, rotation, alice, k1):
    with pytest.raises(ValueError):
        await rotation.rotate_kek_for_owner(db_session, alice.id, k1.id, k1.id)


@pytest.mark.asyncio
async def test_rotate_to_other_users_key_rejected(db_session, registry, rotation, alice, bob, k1):
    bob_key = await registry.create_key(db_session, bob.id, bob.email, "main", is_primary=True)

    with pytest.raises(KeyNotFoundError):
        await rotation.rotate_kek_for_owner(db_session, alice.id, k1.id, bob_key.id)
