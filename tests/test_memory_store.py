from datetime import timedelta

import pytest

from clock import FakeClock
from hana.storage.errors import ConstraintViolation
from hana.storage.memory import MemoryStore
from hana.storage.models import PersonCard, new_id


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store, clock):
    user, _ = store.get_or_create_user("+15551234567", now=clock.now)
    return user


def _card(user_id, clock, name="Alex", **kwargs):
    return PersonCard(
        id=new_id(), user_id=user_id, name=name, timestamp=clock.now, created_at=clock.now, **kwargs
    )


def test_get_or_create_user_is_idempotent(store, clock):
    first, created = store.get_or_create_user("+15551234567", now=clock.now)
    second, created_again = store.get_or_create_user("+15551234567", now=clock.now)
    assert created is True
    assert created_again is False
    assert first.id == second.id


def test_returned_rows_are_copies(store, user):
    fetched = store.get_user(user.id)
    fetched.full_name = "Mallory"
    assert store.get_user(user.id).full_name == "New User"


def test_consume_picks_newest_matching_code(store, clock):
    old = store.create_verification_code("+15551234567", "111111", 10, now=clock.now)
    clock.advance(minutes=1)
    new = store.create_verification_code("+15551234567", "111111", 10, now=clock.now)

    consumed = store.consume_verification_code("+15551234567", "111111", now=clock.now, max_attempts=5)
    assert consumed.id == new.id
    assert store.verification_codes[old.id].used is False


def test_consume_skips_codes_at_attempt_cap(store, clock):
    store.create_verification_code("+15551234567", "111111", 10, now=clock.now)
    for _ in range(3):
        store.record_failed_code_attempt("+15551234567", now=clock.now)
    assert store.consume_verification_code("+15551234567", "111111", now=clock.now, max_attempts=3) is None


def test_latest_code_ignores_used_and_expired(store, clock):
    store.create_verification_code("+15551234567", "111111", 1, now=clock.now)
    clock.advance(minutes=2)
    assert store.latest_verification_code("+15551234567", now=clock.now) is None
    store.create_verification_code("+15551234567", "222222", 10, now=clock.now)
    assert store.latest_verification_code("+15551234567", now=clock.now).code == "222222"


def test_refresh_token_requires_user_and_unique_value(store, user, clock):
    store.create_refresh_token(user.id, "tok", 7, now=clock.now)
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(user.id, "tok", 7, now=clock.now)
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token("missing-user", "other", 7, now=clock.now)


def test_claim_refresh_token_only_once(store, user, clock):
    store.create_refresh_token(user.id, "tok", 7, now=clock.now)
    assert store.claim_refresh_token("tok", now=clock.now).user_id == user.id
    assert store.claim_refresh_token("tok", now=clock.now) is None


def test_revoke_refresh_token_checks_owner(store, user, clock):
    other, _ = store.get_or_create_user("+15559876543", now=clock.now)
    store.create_refresh_token(other.id, "theirs", 7, now=clock.now)

    assert store.revoke_refresh_token("theirs", user_id=user.id) is False
    assert store.claim_refresh_token("theirs", now=clock.now).user_id == other.id

    store.create_refresh_token(user.id, "mine", 7, now=clock.now)
    assert store.revoke_refresh_token("mine", user_id=user.id) is True
    assert store.claim_refresh_token("mine", now=clock.now) is None


def test_active_session_is_newest_unexpired(store, user, clock):
    store.create_session(user.id, "a" * 64, 60, now=clock.now)
    clock.advance(minutes=5)
    newer = store.create_session(user.id, "b" * 64, 60, now=clock.now)
    assert store.get_active_session(user.id, now=clock.now).id == newer.id
    assert store.get_active_session(user.id, now=clock.now + timedelta(minutes=65)) is None


def test_transaction_rolls_back_on_error(store, user, clock):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.create_refresh_token(user.id, "tok", 7, now=clock.now)
            store.update_user_profile(user.id, "Ada", "red", now=clock.now, mark_onboarded=True)
            raise RuntimeError("abort")

    assert store.refresh_tokens == {}
    assert store.get_user(user.id).full_name == "New User"
    assert store.get_user(user.id).is_onboarded is False


def test_nested_transaction_joins_outer(store, user, clock):
    with pytest.raises(RuntimeError):
        with store.transaction():
            with store.transaction():
                store.create_refresh_token(user.id, "tok", 7, now=clock.now)
            raise RuntimeError("abort")
    assert store.refresh_tokens == {}


def test_update_profile_keeps_onboarded_flag(store, user, clock):
    store.update_user_profile(user.id, "Ada", "red", now=clock.now, mark_onboarded=True)
    updated = store.update_user_profile(user.id, "Ada L", "brown", now=clock.now)
    assert updated.is_onboarded is True
    assert updated.full_name == "Ada L"
    assert store.update_user_profile("missing", "x", "y", now=clock.now) is None


class TestPersonCards:
    def test_list_newest_first_with_paging(self, store, user, clock):
        ids = []
        for i in range(5):
            ids.append(store.create_person_card(_card(user.id, clock, name=f"card-{i}")).id)
            clock.advance(minutes=1)

        page = store.list_person_cards(user.id, limit=2, offset=1)
        assert [c.id for c in page] == [ids[3], ids[2]]

    def test_discoverable_filter(self, store, user, clock):
        store.create_person_card(_card(user.id, clock, is_discoverable=True))
        store.create_person_card(_card(user.id, clock))
        assert len(store.list_person_cards(user.id, discoverable=True)) == 1
        assert len(store.list_person_cards(user.id, discoverable=False)) == 1
        assert len(store.list_person_cards(user.id)) == 2

    def test_cards_are_owner_scoped(self, store, user, clock):
        other, _ = store.get_or_create_user("+15557654321", now=clock.now)
        card = store.create_person_card(_card(user.id, clock))

        assert store.get_person_card(other.id, card.id) is None
        assert store.update_person_card(other.id, card.id, name="x") is None
        assert store.delete_person_card(other.id, card.id) is False
        assert store.list_person_cards(other.id) == []
        assert store.delete_person_card(user.id, card.id) is True

    def test_card_requires_existing_user(self, store, clock):
        with pytest.raises(ConstraintViolation):
            store.create_person_card(_card("missing-user", clock))
