import logging
import threading
import weakref
from concurrent import futures
from typing import Any, Mapping, Optional, Union

import pydantic

from .config import Settings
from .errors import (
    ConflictError,
    InsufficientBalanceError,
    InvalidStatusTransitionError,
    NotFoundError,
    NotMintableError,
    SettlementFailureError,
    ValidationError,
)
from .models import (
    Business,
    CreateBusinessRequest,
    CreateRewardRequest,
    CreateTokenRequest,
    CreateUserRequest,
    EntityKind,
    Reward,
    Token,
    Transaction,
    TransactionHistoryResponse,
    TransactionStatus,
    TransactionType,
    UpdateRewardRequest,
    User,
    UserBalance,
    WalletBalance,
    WalletConnection,
)
from .settlement import SettlementGateway, SimulatedSettlementGateway, TokenRef
from .storage import InMemoryStorage, LedgerStorage

log = logging.getLogger("loyalty.service")

REWARD_EDITABLE_FIELDS = frozenset({"name", "description", "token_cost", "is_active"})


def _require_positive(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")


class _RedeemLock:
    """Per-(user, token) mutex that can live in a weak-value table."""

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._lock.release()
        return False


class _SettlementScope:
    """Guarantees a pending transaction leaves ``pending`` on every exit path.

    The transaction is marked ``completed`` only when ``settled`` was set and
    the block exited cleanly; anything else marks it ``failed``. Until then the
    transaction is in flight and ``update_transaction_status`` refuses it.
    """

    def __init__(self, service: "LoyaltyService", transaction: Transaction):
        self.service = service
        self.transaction = transaction
        self.settled = False

    def __enter__(self) -> "_SettlementScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        status = TransactionStatus.COMPLETED if self.settled and exc_type is None else TransactionStatus.FAILED
        try:
            self.transaction = self.service._transition(self.transaction.id, status, in_flight=True)
        finally:
            self.service._release(self.transaction.id)
        return False


class LoyaltyService:
    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        gateway: Optional[SettlementGateway] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or InMemoryStorage(seed=self.settings.seed_sample_data)
        self.gateway = gateway or SimulatedSettlementGateway()
        self._executor = futures.ThreadPoolExecutor(
            max_workers=self.settings.settlement_workers, thread_name_prefix="settlement"
        )
        self._status_lock = threading.Lock()
        self._in_flight: set[int] = set()
        self._mint_lock = threading.Lock()
        self._issue_lock = threading.Lock()
        # Entries vanish once no redeem holds the lock.
        self._redeem_locks: "weakref.WeakValueDictionary[tuple[int, int], _RedeemLock]" = (
            weakref.WeakValueDictionary()
        )
        self._redeem_locks_guard = threading.Lock()

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # -----------------------------
    # Users and businesses
    # -----------------------------
    def create_user(self, request: CreateUserRequest) -> User:
        user = self.storage.create(EntityKind.USER, request.model_dump())
        log.info("Registered user %s (%s)", user.id, user.username)
        return user

    def get_user(self, user_id: int) -> User:
        return self.storage.get_by_id(EntityKind.USER, user_id)

    def get_user_by_wallet(self, wallet_address: str) -> User:
        return self.storage.get_by_wallet_address(EntityKind.USER, wallet_address)

    def create_business(self, request: CreateBusinessRequest) -> Business:
        business = self.storage.create(EntityKind.BUSINESS, request.model_dump())
        log.info("Registered business %s (%s)", business.id, business.name)
        return business

    def get_business(self, business_id: int) -> Business:
        return self.storage.get_by_id(EntityKind.BUSINESS, business_id)

    def get_business_by_wallet(self, wallet_address: str) -> Business:
        return self.storage.get_by_wallet_address(EntityKind.BUSINESS, wallet_address)

    def list_businesses(self) -> list[Business]:
        return self.storage.list_all(EntityKind.BUSINESS)

    def connect_wallet(self, wallet_address: str) -> WalletConnection:
        """Resolve a connecting wallet to a user first, then to a business."""
        try:
            user = self.get_user_by_wallet(wallet_address)
            return WalletConnection(wallet_address=wallet_address, type="user", user=user)
        except NotFoundError:
            pass
        try:
            business = self.get_business_by_wallet(wallet_address)
            return WalletConnection(wallet_address=wallet_address, type="business", business=business)
        except NotFoundError:
            return WalletConnection(wallet_address=wallet_address, type="new")

    # -----------------------------
    # Tokens
    # -----------------------------
    def create_token(self, request: CreateTokenRequest) -> Token:
        business = self.get_business(request.business_id)
        _require_positive(request.supply, "supply")
        if request.decimals < 0:
            raise ValidationError(f"decimals must not be negative, got {request.decimals}")

        authority = request.mint_authority or business.wallet_address
        # Held across the gateway call so at most one token per business is issued.
        with self._issue_lock:
            if self.storage.list_by_owner(EntityKind.TOKEN, business.id):
                raise ConflictError(f"Business {business.id} already issued a token")
            ref = self.gateway.create_token(
                request.name, request.symbol, request.decimals, request.supply,
                mintable=request.mintable, freezable=request.freezable, authority=authority,
            )
            token = self.storage.create(EntityKind.TOKEN, {
                **request.model_dump(),
                "mint_authority": authority,
                "address": ref.address,
            })
        log.info("Issued token %s (%s) for business %s at %s", token.id, token.symbol, business.id, token.address)
        return token

    def get_token(self, token_id: int) -> Token:
        return self.storage.get_by_id(EntityKind.TOKEN, token_id)

    def get_token_info(self, token_id: int) -> TokenRef:
        """Read the token's metadata back from the settlement network."""
        token = self.get_token(token_id)
        return self.gateway.get_token_info(token.address)

    def get_token_by_business(self, business_id: int) -> Token:
        tokens = self.storage.list_by_owner(EntityKind.TOKEN, business_id)
        if not tokens:
            raise NotFoundError(f"Token not found for business {business_id}")
        return tokens[0]

    def mint_additional_tokens(self, token_id: int, amount: int) -> Token:
        """Raise the declared supply; spendable balance only comes from earn."""
        with self._mint_lock:
            token = self.get_token(token_id)
            if not token.mintable:
                raise NotMintableError(f"Token {token_id} is not configured to allow additional minting")
            _require_positive(amount, "amount")
            token = self.storage.update(EntityKind.TOKEN, token_id, {"supply": token.supply + amount})
        log.info("Minted %s more %s, supply now %s", amount, token.symbol, token.supply)
        return token

    # -----------------------------
    # Rewards
    # -----------------------------
    def create_reward(self, request: CreateRewardRequest) -> Reward:
        self.get_business(request.business_id)
        _require_positive(request.token_cost, "token_cost")
        return self.storage.create(EntityKind.REWARD, request.model_dump())

    def update_reward(self, reward_id: int, changes: Union[UpdateRewardRequest, Mapping[str, Any]]) -> Reward:
        if not isinstance(changes, UpdateRewardRequest):
            unknown = set(changes) - REWARD_EDITABLE_FIELDS
            if unknown:
                raise ValidationError(f"Cannot update reward fields: {', '.join(sorted(unknown))}")
            try:
                changes = UpdateRewardRequest.model_validate(dict(changes))
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid reward update: {e}") from e
        changes = changes.model_dump(exclude_unset=True)
        nulls = [k for k, v in changes.items() if v is None]
        if nulls:
            raise ValidationError(f"Reward fields cannot be null: {', '.join(sorted(nulls))}")
        if "token_cost" in changes:
            _require_positive(changes["token_cost"], "token_cost")

        self.get_reward(reward_id)
        return self.storage.update(EntityKind.REWARD, reward_id, dict(changes))

    def get_reward(self, reward_id: int) -> Reward:
        return self.storage.get_by_id(EntityKind.REWARD, reward_id)

    def list_rewards(self, business_id: int) -> list[Reward]:
        return self.storage.list_by_owner(EntityKind.REWARD, business_id)

    # -----------------------------
    # Balances
    # -----------------------------
    def balance_of(self, user_id: int, token_id: int) -> int:
        return sum(t.amount for t in self._completed_for(user_id, token_id))

    def get_balance(self, user_id: int, token_id: int) -> UserBalance:
        completed = self._completed_for(user_id, token_id)
        return UserBalance(
            user_id=user_id,
            token_id=token_id,
            balance=sum(t.amount for t in completed),
            completed_transactions=len(completed),
            last_transaction_at=completed[0].created_at if completed else None,
        )

    def get_wallet_balance(self, user_id: int, token_id: int) -> WalletBalance:
        user = self.get_user(user_id)
        token = self.get_token(token_id)
        wallet = self._require_wallet(user)
        return WalletBalance(
            wallet_address=wallet,
            token_address=token.address,
            balance=self.gateway.get_balance(wallet, token.address),
        )

    def _completed_for(self, user_id: int, token_id: int) -> list[Transaction]:
        self.get_user(user_id)
        token = self.get_token(token_id)
        return [
            t for t in self.storage.list_transactions_by_user(user_id)
            if t.business_id == token.business_id and t.counts_toward_balance()
        ]

    # -----------------------------
    # Transactions
    # -----------------------------
    def get_transaction(self, transaction_id: int) -> Transaction:
        return self.storage.get_by_id(EntityKind.TRANSACTION, transaction_id)

    def list_user_transactions(self, user_id: int) -> list[Transaction]:
        return self.storage.list_transactions_by_user(user_id)

    def list_business_transactions(self, business_id: int) -> list[Transaction]:
        return self.storage.list_by_owner(EntityKind.TRANSACTION, business_id)

    def get_transaction_history(self, user_id: int, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        self.get_user(user_id)
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        transactions = self.list_user_transactions(user_id)
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=transactions[offset:offset + limit],
            total_count=len(transactions),
        )

    def earn(self, user_id: int, business_id: int, amount: int, description: str, token_id: int) -> Transaction:
        _require_positive(amount, "amount")
        user = self.get_user(user_id)
        business = self.get_business(business_id)
        token = self._token_of(token_id, business_id)
        user_wallet = self._require_wallet(user)

        transaction = self._open_transaction(user_id, business_id, TransactionType.EARN, amount, description)
        with _SettlementScope(self, transaction) as scope:
            scope.settled = self._settle(business.wallet_address, user_wallet, token.address, amount)
        return self._finish(scope.transaction)

    def redeem(self, user_id: int, business_id: int, reward_id: int, token_id: int) -> Transaction:
        reward = self.get_reward(reward_id)
        if reward.business_id != business_id:
            raise ValidationError(f"Reward {reward_id} does not belong to business {business_id}")
        if not reward.is_active:
            raise ValidationError(f"Reward {reward_id} is not active")
        user = self.get_user(user_id)
        business = self.get_business(business_id)
        token = self._token_of(token_id, business_id)
        user_wallet = self._require_wallet(user)

        # Held through settlement so a concurrent redeem sees the settled balance.
        with self._redeem_lock(user_id, token_id):
            balance = self.balance_of(user_id, token_id)
            if balance < reward.token_cost:
                raise InsufficientBalanceError(
                    f"Balance {balance} is below reward cost {reward.token_cost}",
                    balance=balance, required=reward.token_cost,
                )
            transaction = self._open_transaction(
                user_id, business_id, TransactionType.REDEEM, -reward.token_cost, f"Redeemed: {reward.name}"
            )
            with _SettlementScope(self, transaction) as scope:
                scope.settled = self._settle(user_wallet, business.wallet_address, token.address, reward.token_cost)
        return self._finish(scope.transaction)

    def update_transaction_status(self, transaction_id: int, status: Union[str, TransactionStatus]) -> Transaction:
        """Finalize a pending transaction by hand.

        Transactions still settling belong to their earn or redeem call and
        are refused here.
        """
        try:
            new_status = TransactionStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status {status!r}")
        return self._transition(transaction_id, new_status)

    def _transition(self, transaction_id: int, status: TransactionStatus, in_flight: bool = False) -> Transaction:
        with self._status_lock:
            current = self.get_transaction(transaction_id)
            if current.status.is_terminal:
                raise InvalidStatusTransitionError(
                    f"Transaction {transaction_id} is already {current.status.value}"
                )
            if not in_flight and transaction_id in self._in_flight:
                raise InvalidStatusTransitionError(f"Transaction {transaction_id} is still settling")
            if not status.is_terminal:
                raise InvalidStatusTransitionError(f"Transaction {transaction_id} is already pending")
            transaction = self.storage.update(EntityKind.TRANSACTION, transaction_id, {"status": status})
        log.info("Transaction %s %s -> %s", transaction_id, current.status.value, status.value)
        return transaction

    def _open_transaction(self, user_id, business_id, tx_type, amount, description) -> Transaction:
        with self._status_lock:
            transaction = self.storage.create(EntityKind.TRANSACTION, {
                "user_id": user_id,
                "business_id": business_id,
                "type": tx_type,
                "amount": amount,
                "description": description,
                "status": TransactionStatus.PENDING,
            })
            self._in_flight.add(transaction.id)
        log.info("Opened %s transaction %s for user %s at business %s (%s)",
                 tx_type.value, transaction.id, user_id, business_id, amount)
        return transaction

    def _release(self, transaction_id: int) -> None:
        with self._status_lock:
            self._in_flight.discard(transaction_id)

    def _settle(self, from_wallet: str, to_wallet: str, token_address: str, amount: int) -> bool:
        try:
            future = self._executor.submit(self.gateway.transfer, from_wallet, to_wallet, token_address, amount)
            return bool(future.result(timeout=self.settings.settlement_timeout))
        except futures.TimeoutError:
            future.cancel()
            log.error("Settlement of %s %s timed out after %ss", amount, token_address, self.settings.settlement_timeout)
            return False
        except Exception:
            log.exception("Settlement of %s %s could not be carried out", amount, token_address)
            return False

    def _finish(self, transaction: Transaction) -> Transaction:
        if transaction.status != TransactionStatus.COMPLETED:
            raise SettlementFailureError(
                f"Settlement failed for {transaction.type.value} transaction {transaction.id}",
                transaction=transaction,
            )
        return transaction

    def _token_of(self, token_id: int, business_id: int) -> Token:
        token = self.get_token(token_id)
        if token.business_id != business_id:
            raise ValidationError(f"Token {token_id} is not issued by business {business_id}")
        return token

    def _require_wallet(self, user: User) -> str:
        if not user.wallet_address:
            raise ValidationError(f"User {user.id} has no wallet address")
        return user.wallet_address

    def _redeem_lock(self, user_id: int, token_id: int) -> _RedeemLock:
        with self._redeem_locks_guard:
            return self._redeem_locks.setdefault((user_id, token_id), _RedeemLock())
