import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from .errors import ConflictError, NotFoundError
from .models import EntityKind, MODEL_FOR_KIND, Transaction, User

log = logging.getLogger("loyalty.storage")

# Fields that must be unique among rows of the same kind.
UNIQUE_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.USER: ("username",),
    EntityKind.BUSINESS: ("wallet_address",),
    EntityKind.TOKEN: ("business_id",),
    EntityKind.REWARD: (),
    EntityKind.TRANSACTION: (),
}

WALLET_KINDS = (EntityKind.USER, EntityKind.BUSINESS)
OWNED_KINDS = (EntityKind.TOKEN, EntityKind.REWARD, EntityKind.TRANSACTION)
TIMESTAMPED_KINDS = (EntityKind.TOKEN, EntityKind.TRANSACTION)


class LedgerStorage(ABC):
    """Backend contract the loyalty service depends on.

    Every lookup miss raises ``NotFoundError``; unique-field collisions on
    ``create`` raise ``ConflictError``. Transaction listings are most recent
    first.

    References between rows (``business_id``, ``user_id``) are not checked
    here. ``LoyaltyService`` resolves every referenced user, business, token
    and reward before it writes, so rows created through the service always
    point at existing entities; direct callers of a store must do the same.
    """

    @abstractmethod
    def create(self, kind: EntityKind, data: dict[str, Any]) -> BaseModel: ...

    @abstractmethod
    def get_by_id(self, kind: EntityKind, entity_id: int) -> BaseModel: ...

    @abstractmethod
    def get_by_wallet_address(self, kind: EntityKind, address: str) -> BaseModel: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> User: ...

    @abstractmethod
    def list_by_owner(self, kind: EntityKind, business_id: int) -> list: ...

    @abstractmethod
    def list_transactions_by_user(self, user_id: int) -> list[Transaction]: ...

    @abstractmethod
    def list_all(self, kind: EntityKind) -> list: ...

    @abstractmethod
    def update(self, kind: EntityKind, entity_id: int, fields: dict[str, Any]) -> BaseModel: ...


class _Table:
    def __init__(self, kind: EntityKind):
        self.kind = kind
        self.rows: dict[int, dict] = {}
        self.next_id = 1
        self.lock = threading.Lock()


class InMemoryStorage(LedgerStorage):
    """Volatile store: one id-keyed table per entity kind, reset on restart."""

    def __init__(self, seed: bool = True):
        self._tables = {kind: _Table(kind) for kind in EntityKind}
        if seed:
            self._seed_data()

    def _seed_data(self):
        business = self.create(EntityKind.BUSINESS, {
            "name": "Coffee Shop", "wallet_address": "9xJ4rK...2VnM",
            "token_symbol": "SLOY", "token_name": "SolLoyalty Token",
        })
        self.create(EntityKind.TOKEN, {
            "business_id": business.id, "name": "SolLoyalty Token", "symbol": "SLOY",
            "supply": 1_000_000, "decimals": 6, "mintable": True, "freezable": False,
            "mint_authority": business.wallet_address, "address": "So1coffee1",
        })
        for name, description, cost in (
            ("$10 Discount", "Use your tokens for a discount on your next purchase.", 200),
            ("Free Coffee", "Redeem for a free coffee at any participating location.", 150),
            ("Priority Service", "Skip the line with priority service at partner locations.", 100),
        ):
            self.create(EntityKind.REWARD, {
                "business_id": business.id, "name": name, "description": description,
                "token_cost": cost, "is_active": True,
            })

    def create(self, kind: EntityKind, data: dict[str, Any]) -> BaseModel:
        table = self._tables[kind]
        with table.lock:
            for unique_field in UNIQUE_FIELDS[kind]:
                value = data.get(unique_field)
                if value is None:
                    continue
                if any(row.get(unique_field) == value for row in table.rows.values()):
                    raise ConflictError(f"{kind.value} with {unique_field}={value!r} already exists")

            row = dict(data)
            row["id"] = table.next_id
            if kind in TIMESTAMPED_KINDS and row.get("created_at") is None:
                row["created_at"] = datetime.now(timezone.utc)
            entity = MODEL_FOR_KIND[kind](**row)

            table.rows[row["id"]] = row
            table.next_id += 1

        log.debug("Created %s %s", kind.value, row["id"])
        return entity

    def get_by_id(self, kind: EntityKind, entity_id: int) -> BaseModel:
        row = self._tables[kind].rows.get(entity_id)
        if row is None:
            raise NotFoundError(f"{kind.value.capitalize()} {entity_id} not found")
        return MODEL_FOR_KIND[kind](**row)

    def get_by_wallet_address(self, kind: EntityKind, address: str) -> BaseModel:
        if kind not in WALLET_KINDS:
            raise ValueError(f"{kind.value} has no wallet address")
        for row in self._snapshot(kind):
            if row.get("wallet_address") == address:
                return MODEL_FOR_KIND[kind](**row)
        raise NotFoundError(f"No {kind.value} with wallet {address}")

    def get_user_by_username(self, username: str) -> User:
        for row in self._snapshot(EntityKind.USER):
            if row["username"] == username:
                return User(**row)
        raise NotFoundError(f"No user named {username}")

    def list_by_owner(self, kind: EntityKind, business_id: int) -> list:
        if kind not in OWNED_KINDS:
            raise ValueError(f"{kind.value} is not owned by a business")
        rows = [r for r in self._snapshot(kind) if r["business_id"] == business_id]
        return self._ordered(kind, rows)

    def list_transactions_by_user(self, user_id: int) -> list[Transaction]:
        rows = [r for r in self._snapshot(EntityKind.TRANSACTION) if r.get("user_id") == user_id]
        return self._ordered(EntityKind.TRANSACTION, rows)

    def list_all(self, kind: EntityKind) -> list:
        return self._ordered(kind, self._snapshot(kind))

    def update(self, kind: EntityKind, entity_id: int, fields: dict[str, Any]) -> BaseModel:
        table = self._tables[kind]
        with table.lock:
            row = table.rows.get(entity_id)
            if row is None:
                raise NotFoundError(f"{kind.value.capitalize()} {entity_id} not found")
            merged = {**row, **fields, "id": entity_id}
            entity = MODEL_FOR_KIND[kind](**merged)
            table.rows[entity_id] = merged
        return entity

    def _snapshot(self, kind: EntityKind) -> list[dict]:
        table = self._tables[kind]
        with table.lock:
            return list(table.rows.values())

    def _ordered(self, kind: EntityKind, rows: list[dict]) -> list:
        model = MODEL_FOR_KIND[kind]
        if kind == EntityKind.TRANSACTION:
            rows = sorted(rows, key=lambda r: (r["created_at"], r["id"]), reverse=True)
        else:
            rows = sorted(rows, key=lambda r: r["id"])
        return [model(**r) for r in rows]
