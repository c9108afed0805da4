import json
import logging
from typing import Optional, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    AccountLockedError,
    AccountService,
    AuthenticationError,
    EmailVerificationService,
    LoginService,
    OtpError,
    RateLimitError,
)
from config import get_settings
from database import get_db, session_scope
from mailer import MailDeliveryError
from models import (
    ExpenseEntry,
    IncomeEntry,
    SavingsCategory,
    SavingsEntry,
    SavingsInstrument,
    User,
)
from months import is_month_token, resolve_range
from schemas import (
    CategoryNameIn,
    EmailIn,
    ExpenseEntryIn,
    ExpenseEntryUpdate,
    ExportQuery,
    IncomeEntryIn,
    IncomeEntryUpdate,
    LoginIn,
    OnboardingIn,
    OtpVerifyIn,
    RegisterIn,
    ResetPasswordIn,
    SavingsEntryIn,
    SavingsEntryUpdate,
    SavingsInstrumentIn,
    first_error_message,
)
from services import (
    DashboardService,
    ExpenseEntryService,
    ExpenseVerticalService,
    ExportService,
    IncomeEntryService,
    IncomeSourceService,
    InsightsService,
    NotFoundError,
    OnboardingService,
    SavingsEntryService,
    SavingsInstrumentService,
    cents_to_amount,
)
from sessions import SESSION_COOKIE, issue_session_token, max_age_seconds, read_session_token

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finlog")

ModelT = TypeVar("ModelT", bound=BaseModel)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        err = errors[0]
        field = ".".join(str(part) for part in err.get("loc", ())[1:])
        message = f"{field}: {err['msg']}" if field else err["msg"]
    return JSONResponse({"error": message}, status_code=400)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse({"error": "Internal server error"}, status_code=500)


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        created = SavingsInstrumentService(session).ensure_defaults()
    if created:
        logger.info(f"savings_instruments_seeded: count={created}")


def current_user_id(request: Request, db: Session = Depends(get_db)) -> int:
    user_id = read_session_token(request.cookies.get(SESSION_COOKIE))
    if user_id is None or db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


async def parse_body(
    request: Request, model: type[ModelT], *, allow_empty: bool = False
) -> ModelT:
    raw = await request.body()
    if not raw.strip() and allow_empty:
        payload: object = {}
    else:
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=first_error_message(exc)) from exc


def _timestamp(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"


def user_payload(user: User) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name}


def _entry_base(entry) -> dict:
    return {
        "id": entry.id,
        "month": entry.month,
        "amount": cents_to_amount(entry.amount_cents),
        "notes": entry.notes,
        "createdAt": _timestamp(entry.created_at),
        "updatedAt": _timestamp(entry.updated_at),
    }


def income_payload(entry: IncomeEntry) -> dict:
    data = _entry_base(entry)
    data["sourceId"] = entry.source_id
    data["source"] = {"id": entry.source.id, "name": entry.source.name}
    return data


def expense_payload(entry: ExpenseEntry) -> dict:
    data = _entry_base(entry)
    data["verticalId"] = entry.vertical_id
    data["vertical"] = {"id": entry.vertical.id, "name": entry.vertical.name}
    return data


def savings_payload(entry: SavingsEntry) -> dict:
    data = _entry_base(entry)
    data["instrumentId"] = entry.instrument_id
    data["instrument"] = {
        "id": entry.instrument.id,
        "name": entry.instrument.name,
        "category": entry.instrument.category.value,
        "categoryLabel": entry.instrument.category.label,
    }
    return data


def category_payload(category, usage: dict[int, int]) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "isDefault": category.is_default,
        "entryCount": usage.get(category.id, 0),
        "createdAt": _timestamp(category.created_at),
    }


def instrument_payload(instrument: SavingsInstrument, usage: dict[int, int]) -> dict:
    data = category_payload(instrument, usage)
    data["category"] = instrument.category.value
    data["categoryLabel"] = instrument.category.label
    return data


def month_param(request: Request) -> Optional[str]:
    month = request.query_params.get("month")
    if month and not is_month_token(month):
        raise HTTPException(status_code=400, detail="Invalid month format. Use YYYY-MM")
    return month or None


# Income entries


@app.get("/api/income")
def api_list_income(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    entries = IncomeEntryService(db, user_id).list(month_param(request))
    return {"entries": [income_payload(entry) for entry in entries]}


@app.post("/api/income", status_code=201)
async def api_create_income(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, IncomeEntryIn)
    try:
        entry = IncomeEntryService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"entry": income_payload(entry)}


@app.get("/api/income/{entry_id}")
def api_get_income(
    entry_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entry = IncomeEntryService(db, user_id).get(entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"entry": income_payload(entry)}


@app.put("/api/income/{entry_id}")
async def api_update_income(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, IncomeEntryUpdate)
    try:
        entry = IncomeEntryService(db, user_id).update(entry_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"entry": income_payload(entry)}


@app.delete("/api/income/{entry_id}")
def api_delete_income(
    entry_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        IncomeEntryService(db, user_id).delete(entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Entry deleted successfully"}


# Expense entries


@app.get("/api/expenses")
def api_list_expenses(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    entries = ExpenseEntryService(db, user_id).list(month_param(request))
    return {"entries": [expense_payload(entry) for entry in entries]}


@app.post("/api/expenses", status_code=201)
async def api_create_expense(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, ExpenseEntryIn)
    try:
        entry = ExpenseEntryService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"entry": expense_payload(entry)}


@app.get("/api/expenses/{entry_id}")
def api_get_expense(
    entry_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entry = ExpenseEntryService(db, user_id).get(entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"entry": expense_payload(entry)}


@app.put("/api/expenses/{entry_id}")
async def api_update_expense(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, ExpenseEntryUpdate)
    try:
        entry = ExpenseEntryService(db, user_id).update(entry_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"entry": expense_payload(entry)}


@app.delete("/api/expenses/{entry_id}")
def api_delete_expense(
    entry_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ExpenseEntryService(db, user_id).delete(entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Entry deleted successfully"}


# Savings entries


@app.get("/api/savings")
def api_list_savings(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    entries = SavingsEntryService(db, user_id).list(month_param(request))
    return {"entries": [savings_payload(entry) for entry in entries]}


@app.post("/api/savings", status_code=201)
async def api_create_savings(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, SavingsEntryIn)
    try:
        entry = SavingsEntryService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"entry": savings_payload(entry)}


@app.get("/api/savings/{entry_id}")
def api_get_savings(
    entry_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entry = SavingsEntryService(db, user_id).get(entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"entry": savings_payload(entry)}


@app.put("/api/savings/{entry_id}")
async def api_update_savings(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, SavingsEntryUpdate)
    try:
        entry = SavingsEntryService(db, user_id).update(entry_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"entry": savings_payload(entry)}


@app.delete("/api/savings/{entry_id}")
def api_delete_savings(
    entry_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        SavingsEntryService(db, user_id).delete(entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Entry deleted successfully"}


# Category registries


@app.get("/api/masters/income-sources")
def api_list_income_sources(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    service = IncomeSourceService(db, user_id)
    usage = service.usage_counts()
    return {"sources": [category_payload(s, usage) for s in service.list_all()]}


@app.post("/api/masters/income-sources", status_code=201)
async def api_create_income_source(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, CategoryNameIn)
    try:
        source = IncomeSourceService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"source": category_payload(source, {})}


@app.put("/api/masters/income-sources/{source_id}")
async def api_update_income_source(
    source_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, CategoryNameIn)
    service = IncomeSourceService(db, user_id)
    try:
        source = service.update(source_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"source": category_payload(source, service.usage_counts())}


@app.delete("/api/masters/income-sources/{source_id}")
def api_delete_income_source(
    source_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        IncomeSourceService(db, user_id).delete(source_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Income source deleted successfully"}


@app.get("/api/masters/expense-verticals")
def api_list_expense_verticals(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    service = ExpenseVerticalService(db, user_id)
    usage = service.usage_counts()
    return {"verticals": [category_payload(v, usage) for v in service.list_all()]}


@app.post("/api/masters/expense-verticals", status_code=201)
async def api_create_expense_vertical(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, CategoryNameIn)
    try:
        vertical = ExpenseVerticalService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"vertical": category_payload(vertical, {})}


@app.put("/api/masters/expense-verticals/{vertical_id}")
async def api_update_expense_vertical(
    vertical_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, CategoryNameIn)
    service = ExpenseVerticalService(db, user_id)
    try:
        vertical = service.update(vertical_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"vertical": category_payload(vertical, service.usage_counts())}


@app.delete("/api/masters/expense-verticals/{vertical_id}")
def api_delete_expense_vertical(
    vertical_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ExpenseVerticalService(db, user_id).delete(vertical_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Expense vertical deleted successfully"}


@app.get("/api/masters/savings-instruments")
def api_list_savings_instruments(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    service = SavingsInstrumentService(db)
    usage = service.usage_counts()
    return {
        "instruments": [instrument_payload(i, usage) for i in service.list_all()],
        "categories": [
            {"value": category.value, "label": category.label}
            for category in SavingsCategory
        ],
    }


@app.post("/api/masters/savings-instruments", status_code=201)
async def api_create_savings_instrument(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, SavingsInstrumentIn)
    try:
        instrument = SavingsInstrumentService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"instrument": instrument_payload(instrument, {})}


@app.put("/api/masters/savings-instruments/{instrument_id}")
async def api_update_savings_instrument(
    instrument_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, SavingsInstrumentIn)
    service = SavingsInstrumentService(db)
    try:
        instrument = service.update(instrument_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"instrument": instrument_payload(instrument, service.usage_counts())}


@app.delete("/api/masters/savings-instruments/{instrument_id}")
def api_delete_savings_instrument(
    instrument_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        SavingsInstrumentService(db).delete(instrument_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Savings instrument deleted successfully"}


# Reporting


@app.get("/api/dashboard")
def api_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    params = request.query_params
    try:
        month_range = resolve_range(
            params.get("from"), params.get("to"), params.get("months")
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return DashboardService(db, user_id).summary(month_range)


@app.get("/api/export")
def api_export(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    month = request.query_params.get("month")
    export_type = request.query_params.get("type")
    if not month or not export_type:
        raise HTTPException(
            status_code=400, detail="Both month and type parameters are required"
        )
    try:
        query = ExportQuery(month=month, type=export_type)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=first_error_message(exc)) from exc
    filename, csv_text = ExportService(db, user_id).export(query.month, query.type)
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/ai/insights")
def api_insights(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return InsightsService(db, user_id).monthly_insights(month_param(request))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/user/onboarding")
def api_onboarding_status(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return {"onboardingCompleted": OnboardingService(db, user_id).is_completed()}


@app.post("/api/user/onboarding")
async def api_complete_onboarding(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    data = await parse_body(request, OnboardingIn, allow_empty=True)
    created = OnboardingService(db, user_id).complete(data)
    return {"onboardingCompleted": True, "created": created}


# Authentication


@app.post("/api/auth/otp/send")
async def api_send_otp(request: Request, db: Session = Depends(get_db)):
    data = await parse_body(request, EmailIn)
    try:
        EmailVerificationService(db).send(data.email)
    except RateLimitError as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    except OtpError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MailDeliveryError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"message": "Verification code sent to your email"}


@app.post("/api/auth/otp/verify")
async def api_verify_otp(request: Request, db: Session = Depends(get_db)):
    data = await parse_body(request, OtpVerifyIn)
    try:
        EmailVerificationService(db).verify(data.email, data.otp)
    except OtpError as exc:
        body: dict[str, object] = {"error": str(exc)}
        if exc.remaining_attempts is not None:
            body["remainingAttempts"] = exc.remaining_attempts
        return JSONResponse(body, status_code=400)
    return {"message": "Email verified successfully", "verified": True}


@app.post("/api/auth/register", status_code=201)
async def api_register(request: Request, db: Session = Depends(get_db)):
    data = await parse_body(request, RegisterIn)
    try:
        user = AccountService(db).register(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "User created successfully", "user": user_payload(user)}


@app.post("/api/auth/login")
async def api_login(
    request: Request, response: Response, db: Session = Depends(get_db)
):
    data = await parse_body(request, LoginIn)
    try:
        user = LoginService(db).authenticate(
            data.email,
            data.password,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except AccountLockedError as exc:
        raise HTTPException(status_code=423, detail=str(exc)) from exc
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    response.set_cookie(
        SESSION_COOKIE,
        issue_session_token(user.id),
        max_age=max_age_seconds(),
        httponly=True,
        samesite="lax",
        secure=get_settings().session_cookie_secure,
    )
    return {"user": user_payload(user)}


@app.post("/api/auth/logout")
def api_logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Logged out successfully"}


@app.get("/api/auth/me")
def api_me(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    return {"user": user_payload(db.get(User, user_id))}


@app.post("/api/auth/forgot-password/verify-email")
async def api_forgot_password_question(
    request: Request, db: Session = Depends(get_db)
):
    data = await parse_body(request, EmailIn)
    try:
        question = AccountService(db).security_question(data.email)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"securityQuestion": question}


@app.post("/api/auth/forgot-password/reset")
async def api_forgot_password_reset(request: Request, db: Session = Depends(get_db)):
    data = await parse_body(request, ResetPasswordIn)
    try:
        AccountService(db).reset_password(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {"message": "Password reset successfully"}


@app.delete("/api/auth/delete-account")
def api_delete_account(
    response: Response,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    AccountService(db).delete_account(user_id)
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Account deleted successfully"}


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
