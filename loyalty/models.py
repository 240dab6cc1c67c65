from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, Field, ConfigDict


class EntityKind(str, Enum):
    USER = "user"
    BUSINESS = "business"
    TOKEN = "token"
    REWARD = "reward"
    TRANSACTION = "transaction"


class TransactionType(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class User(BaseModel):
    id: int
    username: str
    password: str = Field(..., repr=False, exclude=True)
    wallet_address: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Business(BaseModel):
    id: int
    name: str
    wallet_address: str
    token_symbol: Optional[str] = None
    token_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    id: int
    business_id: int
    name: str
    symbol: str
    supply: int
    decimals: int = 6
    mintable: bool = False
    freezable: bool = False
    mint_authority: str
    address: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Reward(BaseModel):
    id: int
    business_id: int
    name: str
    description: str
    token_cost: int
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: int
    user_id: Optional[int] = None
    business_id: int
    type: TransactionType
    amount: int
    description: Optional[str] = None
    status: TransactionStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def counts_toward_balance(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


MODEL_FOR_KIND = {
    EntityKind.USER: User,
    EntityKind.BUSINESS: Business,
    EntityKind.TOKEN: Token,
    EntityKind.REWARD: Reward,
    EntityKind.TRANSACTION: Transaction,
}


class CreateUserRequest(BaseModel):
    username: str
    password: str
    wallet_address: Optional[str] = None


class CreateBusinessRequest(BaseModel):
    name: str
    wallet_address: str
    token_symbol: Optional[str] = None
    token_name: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Coffee Shop",
            "wallet_address": "9xJ4rK...2VnM",
            "token_symbol": "SLOY",
            "token_name": "SolLoyalty Token"
        }
    })


class CreateTokenRequest(BaseModel):
    business_id: int
    name: str
    symbol: str
    supply: int
    decimals: int = 6
    mintable: bool = False
    freezable: bool = False
    mint_authority: Optional[str] = Field(default=None, description="Defaults to the business wallet")


class MintTokensRequest(BaseModel):
    amount: int


class CreateRewardRequest(BaseModel):
    business_id: int
    name: str
    description: str
    token_cost: int
    is_active: bool = True

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "business_id": 1,
            "name": "Free Coffee",
            "description": "Redeem for a free coffee at any participating location.",
            "token_cost": 150,
            "is_active": True
        }
    })


class UpdateRewardRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    token_cost: Optional[int] = None
    is_active: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class EarnRequest(BaseModel):
    user_id: int
    business_id: int
    token_id: int
    amount: int
    description: str = Field(default="Purchase reward")


class RedeemRequest(BaseModel):
    user_id: int
    business_id: int
    reward_id: int
    token_id: int


class UpdateTransactionStatusRequest(BaseModel):
    status: str


class UserBalance(BaseModel):
    user_id: int
    token_id: int
    balance: int
    completed_transactions: int
    last_transaction_at: Optional[datetime] = None


class WalletBalance(BaseModel):
    wallet_address: str
    token_address: str
    balance: int


class TransactionHistoryResponse(BaseModel):
    user_id: int
    transactions: list[Transaction]
    total_count: int


class WalletConnection(BaseModel):
    wallet_address: str
    type: Literal["user", "business", "new"]
    user: Optional[User] = None
    business: Optional[Business] = None
