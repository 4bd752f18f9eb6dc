import logging
from decimal import Decimal
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from auth import bearer_token, read_identity_token
from container import Container, build_container
from errors import NotFound, RateLimited, RequestBlocked, ServiceError, ValidationFailed
from models import User
from periods import Period, resolve_period
from schemas import (
    AccountDetailOut,
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BulkDeleteIn,
    CurrentBudgetOut,
    TransactionIn,
    TransactionOut,
    UserOut,
)
from seed import seed_transactions
from services import (
    AccountService,
    BudgetService,
    TransactionService,
    UserService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_db(container: Container = Depends(get_container)) -> Iterator[Session]:
    db = container.database.session()
    try:
        yield db
    finally:
        db.close()


def current_user(
    request: Request,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> User:
    token = bearer_token(request.headers.get("Authorization"))
    claims = read_identity_token(container.settings, token)
    return UserService(db).ensure_user(claims)


def protect(container: Container, user: User, request: Request) -> None:
    decision = container.limiter.protect(
        user.external_id, user_agent=request.headers.get("User-Agent")
    )
    if not decision.is_denied():
        return
    logger.warning(
        f"request_denied: user_id={user.id} reason={decision.reason.value} "
        f"reset_in={decision.reset_in_secs:.0f}s"
    )
    if decision.is_rate_limit():
        raise RateLimited()
    raise RequestBlocked()


def period_from_request(request: Request) -> Optional[Period]:
    period_slug = request.query_params.get("period")
    if not period_slug:
        return None
    try:
        return resolve_period(
            period_slug,
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc


def _account_out(account, transaction_count: Optional[int] = None) -> AccountOut:
    out = AccountOut.model_validate(account)
    out.transaction_count = transaction_count
    return out


def _resolve_account_id(db: Session, user: User, account_id: Optional[int]) -> int:
    if account_id is not None:
        return AccountService(db, user.id).get(account_id).id
    default = AccountService(db, user.id).default_account()
    if default is None:
        raise NotFound("Account not found")
    return default.id


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(current_user)):
    return user


@router.get("/accounts", response_model=list[AccountOut])
def list_accounts(
    db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return [
        _account_out(account, count)
        for account, count in AccountService(db, user.id).list_with_counts()
    ]


@router.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    container: Container = Depends(get_container),
):
    protect(container, user, request)
    account = AccountService(db, user.id).create(data)
    logger.info(f"account_created: user_id={user.id} account_id={account.id}")
    return _account_out(account, 0)


@router.get("/accounts/{account_id}", response_model=AccountDetailOut)
def get_account(
    account_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    account, transactions = AccountService(db, user.id).get_with_transactions(account_id)
    return AccountDetailOut(
        **_account_out(account, len(transactions)).model_dump(),
        transactions=[TransactionOut.model_validate(txn) for txn in transactions],
    )


@router.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    AccountService(db, user.id).delete(account_id)
    return Response(status_code=204)


@router.post("/accounts/{account_id}/default", response_model=AccountOut)
def set_default_account(
    account_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return _account_out(AccountService(db, user.id).set_default(account_id))


@router.get("/transactions")
def list_transactions(
    request: Request,
    account_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    period = period_from_request(request)
    offset = (page - 1) * limit
    items = TransactionService(db, user.id).list(
        period, account_id, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [
            TransactionOut.model_validate(txn).model_dump(mode="json") for txn in items
        ],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@router.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    container: Container = Depends(get_container),
):
    protect(container, user, request)
    txn = TransactionService(db, user.id).create(data)
    logger.info(
        f"transaction_created: user_id={user.id} transaction_id={txn.id} "
        f"account_id={txn.account_id}"
    )
    return txn


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return TransactionService(db, user.id).get(transaction_id)


@router.put("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return TransactionService(db, user.id).update(transaction_id, data)


@router.post("/transactions/bulk-delete")
def bulk_delete_transactions(
    data: BulkDeleteIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    deleted = TransactionService(db, user.id).bulk_delete(data.ids)
    return {"deleted": deleted}


@router.post("/receipts/scan")
def scan_receipt(
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    container: Container = Depends(get_container),
):
    image = file.file.read()
    scan = container.scanner.scan(image, file.content_type or "")
    logger.info(f"receipt_scanned: user_id={user.id} size={len(image)}")
    return scan.model_dump(mode="json", by_alias=True)


@router.get("/budget", response_model=CurrentBudgetOut)
def get_budget(
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    container: Container = Depends(get_container),
):
    service = BudgetService(db, user.id)
    budget, expenses = service.get(), Decimal("0.00")
    if account_id is not None or AccountService(db, user.id).default_account():
        budget, expenses = service.current(
            _resolve_account_id(db, user, account_id), container.clock()
        )
    return CurrentBudgetOut(
        budget=BudgetOut.model_validate(budget) if budget else None,
        current_expenses=expenses,
    )


@router.put("/budget", response_model=BudgetOut)
def update_budget(
    data: BudgetIn, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return BudgetService(db, user.id).upsert(data)


@router.post("/seed")
def seed(
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    container: Container = Depends(get_container),
):
    target = _resolve_account_id(db, user, account_id)
    created = seed_transactions(db, user.id, target, now=container.clock())
    return {"created": created}


def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} code={exc.code}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


def handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "message": err.get("msg")}
        for err in errors
    ]
    message = details[0]["message"] if details else ValidationFailed.default_message
    return JSONResponse(
        status_code=ValidationFailed.status_code,
        content={
            "error": {
                "code": ValidationFailed.code,
                "message": message,
                "details": details,
            }
        },
    )


def create_app(
    container: Optional[Container] = None, start_scheduler: bool = True
) -> FastAPI:
    container = container or build_container()
    app = FastAPI(title="Finance Platform")
    app.state.container = container
    app.include_router(router)
    app.add_exception_handler(ServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    scheduler_manager = None
    if start_scheduler:
        from scheduler import SchedulerManager

        scheduler_manager = SchedulerManager(container)

        @app.on_event("startup")
        def startup_event():
            scheduler_manager.start()

    @app.on_event("shutdown")
    def shutdown_event():
        if scheduler_manager is not None:
            scheduler_manager.stop()
        container.database.dispose()

    return app


def main():
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
