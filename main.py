import logging
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import cents_to_amount, export_transactions
from database import SessionLocal, engine, init_schema, schema_ready
from errors import LedgerError
from identity import IdentityGate, token_from_headers
from legacy_sqlite_import import LegacyLedgerImportService
from models import Account, Asset, Category, Transaction, User
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdateIn,
    AssetIn,
    AssetUpdateIn,
    CategoryIn,
    LoginIn,
    PincodeLoginIn,
    SignupIn,
    TransactionIn,
    UserUpdateIn,
)
from services import (
    AccountService,
    AssetService,
    CategoryService,
    NetWorthService,
    PeriodStats,
    StatsService,
    TransactionService,
    UserService,
)
from tokens import generate_session_token

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

app = FastAPI(title="Finance Tracker")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open(BASE_DIR / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def format_currency(cents: int) -> str:
    return f"{cents / 100:,.2f}"


templates.env.filters["currency"] = format_currency
templates.env.globals["app_version"] = APP_VERSION


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(request: Request, db: Session = Depends(get_db)) -> User:
    return IdentityGate(db).resolve(token_from_headers(request.headers))


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_schema(engine)
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_errors(exc.errors())}
    )


def jsonable_errors(errors) -> list[dict[str, object]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in errors
    ]


def user_to_dict(user: User) -> dict[str, object]:
    return {"id": user.id, "name": user.name, "username": user.username}


def account_to_dict(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance": cents_to_amount(account.balance_cents),
        "created_at": account.created_at.isoformat() if account.created_at else None,
    }


def category_to_dict(category: Category) -> dict[str, object]:
    return {"id": category.id, "name": category.name, "type": category.type.value}


def txn_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "amount": cents_to_amount(txn.amount_cents),
        "type": txn.type.value,
        "category_id": txn.category_id,
        "category_name": txn.category.name if txn.category else None,
        "account_id": txn.account_id,
        "account_name": txn.account.name if txn.account else None,
        "source_account_id": txn.source_account_id,
        "source_account_name": txn.source_account.name if txn.source_account else None,
        "destination_account_id": txn.destination_account_id,
        "destination_account_name": txn.destination_account.name
        if txn.destination_account
        else None,
        "description": txn.description,
        "date": txn.date.isoformat(),
    }


def asset_to_dict(asset: Asset) -> dict[str, object]:
    return {
        "id": asset.id,
        "name": asset.name,
        "value": cents_to_amount(asset.value_cents),
        "type": asset.type,
        "created_at": asset.created_at.isoformat() if asset.created_at else None,
    }


def stats_to_dict(stats: PeriodStats) -> dict[str, object]:
    return {
        "total_income": cents_to_amount(stats.total_income_cents),
        "total_expenses": cents_to_amount(stats.total_expenses_cents),
        "income_count": stats.income_count,
        "expense_count": stats.expense_count,
        "categoryStats": [
            {
                "name": item.name,
                "total": cents_to_amount(item.total_cents),
                "type": item.type.value,
            }
            for item in stats.category_stats
        ],
    }


def session_payload(user: User) -> dict[str, object]:
    return {
        "success": True,
        "user": user_to_dict(user),
        "token": generate_session_token(user.id),
    }


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    now = datetime.utcnow()
    stats = StatsService(db, user.id).stats(now.month, now.year)
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "user": user,
            "accounts": AccountService(db, user.id).list_all(),
            "assets": AssetService(db, user.id).list_all(),
            "net_worth": NetWorthService(db, user.id).summary(),
            "stats": stats,
            "month_label": now.strftime("%B %Y"),
            "recent": TransactionService(db, user.id).list(now.month, now.year)[:10],
        },
    )


@app.get("/api/health")
def health():
    ready = schema_ready(engine)
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "unavailable", "schema": ready},
    )


@app.post("/api/auth/signup")
def signup(payload: SignupIn, db: Session = Depends(get_db)):
    user = UserService(db).signup(payload)
    return session_payload(user)


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(payload.username, payload.password)
    return session_payload(user)


@app.post("/api/auth/pincode")
def pincode_login(payload: PincodeLoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate_pincode(payload.username, payload.pincode)
    return session_payload(user)


@app.get("/api/auth/session")
def session_lookup(request: Request, db: Session = Depends(get_db)):
    user = IdentityGate(db).user_for_token(token_from_headers(request.headers))
    return {"user": user_to_dict(user) if user else None}


@app.get("/api/user")
def get_user(user: User = Depends(current_user)):
    return user_to_dict(user)


@app.put("/api/user")
def update_user(
    payload: UserUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return user_to_dict(UserService(db).rename(user.id, payload.name))


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return [account_to_dict(a) for a in AccountService(db, user.id).list_all()]


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return account_to_dict(AccountService(db, user.id).create(payload))


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return account_to_dict(AccountService(db, user.id).get(account_id))


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return account_to_dict(AccountService(db, user.id).update(account_id, payload))


@app.delete("/api/accounts/{account_id}")
def delete_account(
    account_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    AccountService(db, user.id).delete(account_id)
    return {"success": True}


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return [category_to_dict(c) for c in CategoryService(db, user.id).list_all()]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return category_to_dict(CategoryService(db, user.id).create(payload))


@app.get("/api/transactions")
def list_transactions(
    month: Optional[int] = Query(None),
    year: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    items = TransactionService(db, user.id).list(month, year)
    return [txn_to_dict(t) for t in items]


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    service = TransactionService(db, user.id)
    txn = service.create(payload)
    return txn_to_dict(service.get(txn.id))


@app.get("/api/transactions/stats")
def transaction_stats(
    month: Optional[int] = Query(None),
    year: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return stats_to_dict(StatsService(db, user.id).stats(month, year))


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(
    month: Optional[int] = Query(None),
    year: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    csv_text = export_transactions(TransactionService(db, user.id).list(month, year))
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"transactions_{timestamp}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return txn_to_dict(TransactionService(db, user.id).get(transaction_id))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    TransactionService(db, user.id).delete(transaction_id)
    return {"success": True}


@app.get("/api/assets")
def list_assets(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return [asset_to_dict(a) for a in AssetService(db, user.id).list_all()]


@app.post("/api/assets", status_code=201)
def create_asset(
    payload: AssetIn, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    return asset_to_dict(AssetService(db, user.id).create(payload))


@app.put("/api/assets/{asset_id}")
def update_asset(
    asset_id: int,
    payload: AssetUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return asset_to_dict(AssetService(db, user.id).update(asset_id, payload))


@app.delete("/api/assets/{asset_id}")
def delete_asset(
    asset_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    AssetService(db, user.id).delete(asset_id)
    return {"success": True}


@app.get("/api/net-worth")
def net_worth(db: Session = Depends(get_db), user: User = Depends(current_user)):
    summary = NetWorthService(db, user.id).summary()
    return {
        "accounts_total": cents_to_amount(summary["accounts_cents"]),
        "assets_total": cents_to_amount(summary["assets_cents"]),
        "net_worth": cents_to_amount(summary["net_worth_cents"]),
    }


async def _save_upload(upload: UploadFile) -> Path:
    content = await upload.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        tmp.write(content)
        return Path(tmp.name)


@app.post("/api/admin/import-legacy/preview")
async def import_legacy_preview(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    path = await _save_upload(file)
    try:
        preview = LegacyLedgerImportService(db, user.id).preview(path)
    finally:
        path.unlink(missing_ok=True)
    return {
        "accounts": preview.accounts_count,
        "categories": preview.categories_count,
        "transactions": preview.transactions_count,
        "importable_transactions": preview.importable_transactions,
        "assets": preview.assets_count,
        "min_transaction_date": preview.min_transaction_date.isoformat()
        if preview.min_transaction_date
        else None,
        "max_transaction_date": preview.max_transaction_date.isoformat()
        if preview.max_transaction_date
        else None,
        "category_mapping": [
            {
                "legacy_name": row.legacy_name,
                "type": row.legacy_type.value,
                "transactions": row.transaction_count,
                "action": row.action,
                "target": row.target_category_name,
            }
            for row in preview.mapping_rows
        ],
        "warnings": preview.warnings,
    }


@app.post("/api/admin/import-legacy/commit")
async def import_legacy_commit(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    path = await _save_upload(file)
    try:
        return LegacyLedgerImportService(db, user.id).commit(path)
    finally:
        path.unlink(missing_ok=True)


def main():
    import uvicorn

    settings = get_settings()
    logger.info(f"Starting finance tracker multi_tenant={settings.multi_tenant}")
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
