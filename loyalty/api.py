import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import (
    ConflictError,
    InsufficientBalanceError,
    LedgerError,
    NotFoundError,
    NotMintableError,
    SettlementFailureError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    Business, CreateBusinessRequest, CreateRewardRequest, CreateTokenRequest,
    CreateUserRequest, EarnRequest, MintTokensRequest, RedeemRequest, Reward,
    Token, Transaction, TransactionHistoryResponse, UpdateRewardRequest,
    UpdateTransactionStatusRequest, User, UserBalance, WalletBalance, WalletConnection,
)
from .service import LoyaltyService
from .settlement import TokenRef

log = logging.getLogger("loyalty.api")

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotMintableError: status.HTTP_400_BAD_REQUEST,
    InsufficientBalanceError: status.HTTP_400_BAD_REQUEST,
    SettlementFailureError: status.HTTP_502_BAD_GATEWAY,
}

router = APIRouter()


def get_service(request: Request) -> LoyaltyService:
    return request.app.state.loyalty_service


def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    body = {"error": exc.code, "detail": str(exc)}
    if isinstance(exc, SettlementFailureError) and exc.transaction is not None:
        body["transaction"] = exc.transaction.model_dump(mode="json")
    if status_code >= 500:
        log.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=body)


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "loyalty-ledger"}


@router.get("/wallets/{address}", response_model=WalletConnection, tags=["Wallets"])
def connect_wallet(address: str, service: LoyaltyService = Depends(get_service)):
    return service.connect_wallet(address)


@router.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def create_user(request: CreateUserRequest, service: LoyaltyService = Depends(get_service)):
    return service.create_user(request)


@router.get("/users/wallet/{address}", response_model=User, tags=["Users"])
def get_user_by_wallet(address: str, service: LoyaltyService = Depends(get_service)):
    return service.get_user_by_wallet(address)


@router.get("/users/{user_id}", response_model=User, tags=["Users"])
def get_user(user_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_user(user_id)


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: int, token_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_balance(user_id, token_id)


@router.get("/users/{user_id}/wallet-balance", response_model=WalletBalance, tags=["Users"])
def get_user_wallet_balance(user_id: int, token_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_wallet_balance(user_id, token_id)


@router.get("/users/{user_id}/transactions", response_model=list[Transaction], tags=["Users"])
def get_user_transactions(user_id: int, service: LoyaltyService = Depends(get_service)):
    return service.list_user_transactions(user_id)


@router.get("/users/{user_id}/ledger", response_model=TransactionHistoryResponse, tags=["Users"])
def get_user_ledger(user_id: int, limit: int = 50, offset: int = 0, service: LoyaltyService = Depends(get_service)):
    return service.get_transaction_history(user_id, limit, offset)


@router.get("/businesses", response_model=list[Business], tags=["Businesses"])
def list_businesses(service: LoyaltyService = Depends(get_service)):
    return service.list_businesses()


@router.post("/businesses", response_model=Business, status_code=status.HTTP_201_CREATED, tags=["Businesses"])
def create_business(request: CreateBusinessRequest, service: LoyaltyService = Depends(get_service)):
    return service.create_business(request)


@router.get("/businesses/wallet/{address}", response_model=Business, tags=["Businesses"])
def get_business_by_wallet(address: str, service: LoyaltyService = Depends(get_service)):
    return service.get_business_by_wallet(address)


@router.get("/businesses/{business_id}", response_model=Business, tags=["Businesses"])
def get_business(business_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_business(business_id)


@router.get("/businesses/{business_id}/token", response_model=Token, tags=["Businesses"])
def get_business_token(business_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_token_by_business(business_id)


@router.get("/businesses/{business_id}/rewards", response_model=list[Reward], tags=["Businesses"])
def get_business_rewards(business_id: int, service: LoyaltyService = Depends(get_service)):
    return service.list_rewards(business_id)


@router.get("/businesses/{business_id}/transactions", response_model=list[Transaction], tags=["Businesses"])
def get_business_transactions(business_id: int, service: LoyaltyService = Depends(get_service)):
    return service.list_business_transactions(business_id)


@router.post("/tokens", response_model=Token, status_code=status.HTTP_201_CREATED, tags=["Tokens"])
def create_token(request: CreateTokenRequest, service: LoyaltyService = Depends(get_service)):
    return service.create_token(request)


@router.get("/tokens/{token_id}", response_model=Token, tags=["Tokens"])
def get_token(token_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_token(token_id)


@router.get("/tokens/{token_id}/chain", response_model=TokenRef, tags=["Tokens"])
def get_token_info(token_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_token_info(token_id)


@router.post("/tokens/{token_id}/mint", response_model=Token, tags=["Tokens"])
def mint_tokens(token_id: int, request: MintTokensRequest, service: LoyaltyService = Depends(get_service)):
    return service.mint_additional_tokens(token_id, request.amount)


@router.post("/rewards", response_model=Reward, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def create_reward(request: CreateRewardRequest, service: LoyaltyService = Depends(get_service)):
    return service.create_reward(request)


@router.get("/rewards/{reward_id}", response_model=Reward, tags=["Rewards"])
def get_reward(reward_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_reward(reward_id)


@router.patch("/rewards/{reward_id}", response_model=Reward, tags=["Rewards"])
def update_reward(reward_id: int, request: UpdateRewardRequest, service: LoyaltyService = Depends(get_service)):
    return service.update_reward(reward_id, request)


@router.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(transaction_id: int, service: LoyaltyService = Depends(get_service)):
    return service.get_transaction(transaction_id)


@router.patch("/transactions/{transaction_id}/status", response_model=Transaction, tags=["Transactions"])
def update_transaction_status(
    transaction_id: int, request: UpdateTransactionStatusRequest, service: LoyaltyService = Depends(get_service)
):
    return service.update_transaction_status(transaction_id, request.status)


@router.post("/earn", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def earn_tokens(request: EarnRequest, service: LoyaltyService = Depends(get_service)):
    return service.earn(request.user_id, request.business_id, request.amount, request.description, request.token_id)


@router.post("/redeem", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def redeem_reward(request: RedeemRequest, service: LoyaltyService = Depends(get_service)):
    return service.redeem(request.user_id, request.business_id, request.reward_id, request.token_id)


def create_app(service: Optional[LoyaltyService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="Loyalty Ledger API",
        description="Token loyalty ledger: businesses issue tokens, customers earn and redeem them",
        version="1.0.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.state.loyalty_service = service or LoyaltyService(settings=settings)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=8000)
