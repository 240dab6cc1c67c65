"""
Unit Tests for the In-Memory Entity Store
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from loyalty.errors import ConflictError, NotFoundError
from loyalty.models import EntityKind, TransactionStatus, TransactionType
from loyalty.storage import InMemoryStorage


def add_transaction(storage, business_id=1, user_id=None, amount=10, created_at=None):
    return storage.create(EntityKind.TRANSACTION, {
        "user_id": user_id, "business_id": business_id, "type": TransactionType.EARN,
        "amount": amount, "description": None, "status": TransactionStatus.COMPLETED,
        "created_at": created_at,
    })


class TestSeedData:
    def test_sample_rows_loaded(self):
        storage = InMemoryStorage()

        business = storage.get_by_id(EntityKind.BUSINESS, 1)
        token = storage.list_by_owner(EntityKind.TOKEN, business.id)[0]
        rewards = storage.list_by_owner(EntityKind.REWARD, business.id)

        assert business.name == "Coffee Shop"
        assert token.symbol == "SLOY"
        assert token.supply == 1_000_000
        assert [r.token_cost for r in rewards] == [200, 150, 100]

    def test_unseeded_store_is_empty(self):
        storage = InMemoryStorage(seed=False)

        assert storage.list_all(EntityKind.BUSINESS) == []


class TestIdentity:
    """Identifier assignment and lookups."""

    def test_ids_are_monotonic_per_kind(self):
        storage = InMemoryStorage(seed=False)

        first = storage.create(EntityKind.USER, {"username": "a", "password": "x"})
        second = storage.create(EntityKind.USER, {"username": "b", "password": "x"})
        business = storage.create(EntityKind.BUSINESS, {"name": "Shop", "wallet_address": "W"})

        assert (first.id, second.id, business.id) == (1, 2, 1)

    def test_get_by_id_is_stable(self):
        storage = InMemoryStorage()

        assert storage.get_by_id(EntityKind.REWARD, 2) == storage.get_by_id(EntityKind.REWARD, 2)

    def test_missing_id(self):
        storage = InMemoryStorage()

        with pytest.raises(NotFoundError):
            storage.get_by_id(EntityKind.TRANSACTION, 1)

    def test_concurrent_creates_never_collide(self):
        """Parallel creates receive distinct, gapless identifiers."""
        storage = InMemoryStorage(seed=False)
        created = []
        barrier = threading.Barrier(40)

        def register(n):
            barrier.wait()
            created.append(storage.create(EntityKind.USER, {"username": f"user-{n}", "password": "pw"}))

        threads = [threading.Thread(target=register, args=(n,)) for n in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(u.id for u in created) == list(range(1, 41))


class TestConstraints:
    def test_duplicate_username(self):
        storage = InMemoryStorage(seed=False)
        storage.create(EntityKind.USER, {"username": "alice", "password": "x"})

        with pytest.raises(ConflictError):
            storage.create(EntityKind.USER, {"username": "alice", "password": "y"})

    def test_duplicate_business_wallet(self):
        storage = InMemoryStorage()

        with pytest.raises(ConflictError):
            storage.create(EntityKind.BUSINESS, {"name": "Copycat", "wallet_address": "9xJ4rK...2VnM"})

    def test_references_are_left_to_the_service(self):
        """The store records foreign ids as given; the service resolves them first."""
        storage = InMemoryStorage(seed=False)

        orphan = add_transaction(storage, business_id=5, user_id=9)

        assert storage.list_by_owner(EntityKind.TRANSACTION, 5) == [orphan]

    def test_users_may_share_missing_wallet(self):
        storage = InMemoryStorage(seed=False)
        storage.create(EntityKind.USER, {"username": "a", "password": "x", "wallet_address": None})
        storage.create(EntityKind.USER, {"username": "b", "password": "x", "wallet_address": None})

        assert len(storage.list_all(EntityKind.USER)) == 2


class TestQueries:
    def test_wallet_lookup(self):
        storage = InMemoryStorage(seed=False)
        user = storage.create(EntityKind.USER, {"username": "a", "password": "x", "wallet_address": "WA"})

        assert storage.get_by_wallet_address(EntityKind.USER, "WA") == user
        with pytest.raises(NotFoundError):
            storage.get_by_wallet_address(EntityKind.BUSINESS, "WA")

    def test_username_lookup(self):
        storage = InMemoryStorage(seed=False)
        user = storage.create(EntityKind.USER, {"username": "bob", "password": "x"})

        assert storage.get_user_by_username("bob") == user

    def test_business_transactions_most_recent_first(self):
        """Ordering follows created_at, not insertion order."""
        storage = InMemoryStorage()
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        middle = add_transaction(storage, amount=2, created_at=base + timedelta(hours=1))
        oldest = add_transaction(storage, amount=1, created_at=base)
        newest = add_transaction(storage, amount=3, created_at=base + timedelta(hours=2))
        add_transaction(storage, business_id=2, amount=99, created_at=base + timedelta(hours=3))

        listed = storage.list_by_owner(EntityKind.TRANSACTION, 1)

        assert [t.id for t in listed] == [newest.id, middle.id, oldest.id]

    def test_user_transactions_most_recent_first(self):
        storage = InMemoryStorage()
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        late = add_transaction(storage, user_id=7, created_at=base + timedelta(days=1))
        early = add_transaction(storage, user_id=7, created_at=base)
        add_transaction(storage, user_id=8, created_at=base)

        assert [t.id for t in storage.list_transactions_by_user(7)] == [late.id, early.id]


class TestUpdate:
    def test_update_merges_fields(self):
        storage = InMemoryStorage()

        reward = storage.update(EntityKind.REWARD, 3, {"is_active": False})

        assert reward.is_active is False
        assert reward.name == "Priority Service"
        assert storage.get_by_id(EntityKind.REWARD, 3).is_active is False

    def test_update_never_changes_id(self):
        storage = InMemoryStorage()

        reward = storage.update(EntityKind.REWARD, 3, {"id": 50})

        assert reward.id == 3

    def test_update_missing_row(self):
        storage = InMemoryStorage()

        with pytest.raises(NotFoundError):
            storage.update(EntityKind.REWARD, 30, {"name": "x"})
