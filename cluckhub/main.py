from fastapi import FastAPI, Depends, File, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import List, Optional
import logging
from . import models, schemas, database, auth, ledger, reports, imports
from .advisor import PoultryAdvisor, get_advisor, build_health_context
from .config import get_settings
from .errors import CluckHubError, AccessError, NotFoundError, ValidationError
from .metrics import age_in_weeks, mortality_rate, feed_conversion_ratio, cost_per_bird

from fastapi.middleware.cors import CORSMiddleware

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version="1.0.0")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Database Dependency
get_db = database.get_db


@app.on_event("startup")
async def startup():
    auth.init_firebase()
    # In production, use migrations (Alembic). For this setup, auto-create.
    await database.init_db()


@app.exception_handler(CluckHubError)
async def cluckhub_error_handler(request: Request, exc: CluckHubError):
    body = {"detail": exc.message}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, AccessError):
        logger.warning("%s %s denied: %s", request.method, request.url.path, exc.message)
        if settings.debug:
            body["context"] = jsonable_encoder(exc.context())
        else:
            body = {"detail": "You do not have permission to perform this action."}
    return JSONResponse(status_code=exc.status_code, content=body)


@app.get("/health")
def health_check():
    return {"status": "ok", "version": "1.0.0"}


async def _owned_rows(db: AsyncSession, model, owner_id: str, *filters, order_by=None):
    stmt = select(model).filter(model.owner_id == owner_id, *filters)
    if order_by is not None:
        stmt = stmt.order_by(order_by)
    result = await db.execute(stmt)
    return result.scalars().all()


async def _latest_reading(db: AsyncSession, owner_id: str) -> Optional[models.SensorReading]:
    stmt = (
        select(models.SensorReading)
        .filter(models.SensorReading.owner_id == owner_id)
        .order_by(models.SensorReading.timestamp.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()

# --- Profile ---

@app.get("/profile", response_model=schemas.Profile)
async def get_profile(user: models.UserProfile = Depends(auth.get_current_user)):
    return user

@app.put("/profile", response_model=schemas.Profile)
async def update_profile(
    profile_update: schemas.ProfileUpdate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    profile = await db.get(models.UserProfile, user.id)
    for key, value in profile_update.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(profile, key, value.value if key == "currency" else value)
    await db.commit()
    await db.refresh(profile)
    return profile

# --- Flocks ---

@app.post("/flocks/", response_model=schemas.Flock)
async def create_flock(
    flock: schemas.FlockCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.create_flock(db, user.id, flock)

@app.get("/flocks/", response_model=List[schemas.Flock])
async def get_flocks(
    type: Optional[schemas.FlockTypeEnum] = None,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    filters = [models.Flock.type == type.value] if type else []
    return await _owned_rows(db, models.Flock, user.id, *filters, order_by=models.Flock.hatch_date.desc())

@app.get("/flocks/{flock_id}", response_model=schemas.Flock)
async def get_flock(
    flock_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.get_owned(db, models.Flock, flock_id, user.id)

@app.put("/flocks/{flock_id}", response_model=schemas.Flock)
async def update_flock(
    flock_id: str,
    flock_update: schemas.FlockUpdate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.update_flock(db, user.id, flock_id, flock_update)

@app.delete("/flocks/{flock_id}", response_model=schemas.FlockDeleted)
async def delete_flock(
    flock_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    orphaned = await ledger.delete_flock(db, user.id, flock_id)
    return schemas.FlockDeleted(message="Flock deleted", **orphaned)

@app.post("/flocks/{flock_id}/losses", response_model=schemas.Flock)
async def record_loss(
    flock_id: str,
    loss: schemas.RecordLoss,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.record_loss(db, user.id, flock_id, loss.count)

@app.post("/flocks/{flock_id}/eggs", response_model=schemas.Flock)
async def record_eggs(
    flock_id: str,
    eggs: schemas.RecordEggs,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.record_eggs(db, user.id, flock_id, eggs.count)

@app.get("/flocks/{flock_id}/metrics", response_model=schemas.FlockMetrics)
async def get_flock_metrics(
    flock_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    flock = await ledger.get_owned(db, models.Flock, flock_id, user.id)
    return schemas.FlockMetrics(
        flock_id=flock.id,
        age_in_weeks=age_in_weeks(flock.hatch_date),
        mortality_rate=round(mortality_rate(flock), 2),
        feed_conversion_ratio=feed_conversion_ratio(flock),
        cost_per_bird=cost_per_bird(flock),
        egg_production_rate=flock.egg_production_rate if flock.type == "Layer" else None,
    )

# --- Sales ---

@app.post("/sales/", response_model=schemas.Sale)
async def create_sale(
    sale: schemas.SaleCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.record_sale(db, user.id, sale)

@app.get("/sales/", response_model=List[schemas.Sale])
async def get_sales(
    flock_id: Optional[str] = None,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    filters = [models.Sale.flock_id == flock_id] if flock_id else []
    return await _owned_rows(db, models.Sale, user.id, *filters, order_by=models.Sale.sale_date.desc())

@app.get("/sales/{sale_id}", response_model=schemas.Sale)
async def get_sale(
    sale_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.get_owned(db, models.Sale, sale_id, user.id)

@app.put("/sales/{sale_id}", response_model=schemas.Sale)
async def update_sale(
    sale_id: str,
    sale_update: schemas.SaleCreate, # Re-using create schema for update
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.update_sale(db, user.id, sale_id, sale_update)

@app.delete("/sales/{sale_id}")
async def delete_sale(
    sale_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await ledger.delete_sale(db, user.id, sale_id)
    return {"message": "Sale deleted and items returned to inventory"}

# --- Expenditures ---

@app.post("/expenditures/", response_model=schemas.Expenditure)
async def create_expenditure(
    expenditure: schemas.ExpenditureCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.record_expenditure(db, user.id, expenditure)

@app.get("/expenditures/", response_model=List[schemas.Expenditure])
async def get_expenditures(
    category: Optional[schemas.ExpenditureCategoryEnum] = None,
    flock_id: Optional[str] = None,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    filters = []
    if category:
        filters.append(models.Expenditure.category == category.value)
    if flock_id:
        filters.append(models.Expenditure.flock_id == flock_id)
    return await _owned_rows(
        db, models.Expenditure, user.id, *filters, order_by=models.Expenditure.expenditure_date.desc()
    )

@app.get("/expenditures/template.csv")
def get_expenditure_template():
    return Response(
        content=imports.expenditure_template_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="expenditure_template.csv"'},
    )

@app.post("/expenditures/import", response_model=schemas.ExpenditureImportReport)
async def import_expenditures(
    file: UploadFile = File(...),
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Import a CSV of expenditures; invalid rows are reported and skipped"""
    raw = await file.read()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("CSV file must be UTF-8 encoded.", field="file")
    return await imports.import_expenditures(db, user.id, text)

@app.get("/expenditures/{expenditure_id}", response_model=schemas.Expenditure)
async def get_expenditure(
    expenditure_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.get_owned(db, models.Expenditure, expenditure_id, user.id)

@app.put("/expenditures/{expenditure_id}", response_model=schemas.Expenditure)
async def update_expenditure(
    expenditure_id: str,
    expenditure_update: schemas.ExpenditureCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.update_expenditure(db, user.id, expenditure_id, expenditure_update)

@app.delete("/expenditures/{expenditure_id}")
async def delete_expenditure(
    expenditure_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await ledger.delete_expenditure(db, user.id, expenditure_id)
    return {"message": "Expenditure deleted"}

# --- Contacts ---

@app.post("/contacts/", response_model=schemas.Contact)
async def create_contact(
    contact: schemas.ContactCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    new_contact = models.Contact(owner_id=user.id, **contact.model_dump(mode="json"))
    db.add(new_contact)
    await db.commit()
    await db.refresh(new_contact)
    return new_contact

@app.get("/contacts/", response_model=List[schemas.Contact])
async def get_contacts(
    type: Optional[schemas.ContactTypeEnum] = None,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    filters = [models.Contact.type == type.value] if type else []
    return await _owned_rows(db, models.Contact, user.id, *filters, order_by=models.Contact.name)

@app.put("/contacts/{contact_id}", response_model=schemas.Contact)
async def update_contact(
    contact_id: str,
    contact_update: schemas.ContactCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    contact = await ledger.get_owned(db, models.Contact, contact_id, user.id, "update")
    for key, value in contact_update.model_dump(mode="json").items():
        setattr(contact, key, value)
    await db.commit()
    await db.refresh(contact)
    return contact

@app.delete("/contacts/{contact_id}")
async def delete_contact(
    contact_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    contact = await ledger.get_owned(db, models.Contact, contact_id, user.id, "delete")
    await db.delete(contact)
    await db.commit()
    return {"message": "Contact deleted"}

# --- Sensor Data ---

@app.post("/sensor-data/", response_model=schemas.SensorReading)
async def add_sensor_reading(
    reading: schemas.SensorReadingCreate,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    new_reading = models.SensorReading(owner_id=user.id, **reading.model_dump())
    db.add(new_reading)
    await db.commit()
    await db.refresh(new_reading)
    return new_reading

@app.get("/sensor-data/latest", response_model=schemas.SensorReading)
async def get_latest_sensor_reading(
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    reading = await _latest_reading(db, user.id)
    if not reading:
        raise NotFoundError("No sensor readings recorded")
    return reading

# --- Dashboard & Reports ---

@app.get("/dashboard", response_model=schemas.DashboardSummary)
async def get_dashboard(
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    flocks = await _owned_rows(db, models.Flock, user.id)
    sales = await _owned_rows(db, models.Sale, user.id)
    expenditures = await _owned_rows(db, models.Expenditure, user.id)
    latest = await _latest_reading(db, user.id)
    return reports.dashboard_summary(flocks, sales, expenditures, latest)

@app.get("/reports/financials", response_model=schemas.FinancialSummary)
async def get_financials(
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    sales = await _owned_rows(db, models.Sale, user.id)
    expenditures = await _owned_rows(db, models.Expenditure, user.id)
    return reports.financial_summary(sales, expenditures, user.currency or settings.default_currency)

@app.get("/reports/performance")
async def get_performance(
    flock_id: Optional[str] = None,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """All flocks side by side, or the weekly projection of a single flock"""
    if flock_id:
        flock = await ledger.get_owned(db, models.Flock, flock_id, user.id)
        return {"flock_id": flock.id, "weeks": reports.weekly_projection(flock)}
    flocks = await _owned_rows(db, models.Flock, user.id)
    return {"flocks": reports.flock_comparison(flocks)}

@app.get("/reports/hatch-months", response_model=List[schemas.HatchMonthPerformance])
async def get_hatch_month_performance(
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    flocks = await _owned_rows(db, models.Flock, user.id)
    return reports.hatch_month_performance(flocks)

# --- AI Advisory ---

@app.post("/ai/feed-mix", response_model=schemas.OptimizeFeedMixOutput)
async def optimize_feed_mix(
    request: schemas.OptimizeFeedMixInput,
    user: models.UserProfile = Depends(auth.get_current_user),
    advisor: PoultryAdvisor = Depends(get_advisor)
):
    return await advisor.optimize_feed_mix(request)

@app.get("/ai/health-prediction/context", response_model=schemas.PredictHealthIssuesInput)
async def get_health_prediction_context(
    flock_id: str,
    user: models.UserProfile = Depends(auth.get_current_user),
    db: AsyncSession = Depends(get_db)
):
    flock = await ledger.get_owned(db, models.Flock, flock_id, user.id)
    reading = await _latest_reading(db, user.id)
    return build_health_context(flock, reading)

@app.post("/ai/health-prediction", response_model=schemas.PredictHealthIssuesOutput)
async def predict_health_issues(
    request: schemas.PredictHealthIssuesInput,
    user: models.UserProfile = Depends(auth.get_current_user),
    advisor: PoultryAdvisor = Depends(get_advisor)
):
    return await advisor.predict_health_issues(request)

@app.post("/ai/questions", response_model=schemas.PoultryQuestionOutput)
async def answer_poultry_question(
    request: schemas.PoultryQuestionInput,
    user: models.UserProfile = Depends(auth.get_current_user),
    advisor: PoultryAdvisor = Depends(get_advisor)
):
    return await advisor.answer_poultry_question(request)

@app.post("/ai/receipts", response_model=schemas.ScanReceiptOutput)
async def scan_receipt(
    request: schemas.ScanReceiptInput,
    user: models.UserProfile = Depends(auth.get_current_user),
    advisor: PoultryAdvisor = Depends(get_advisor)
):
    return await advisor.scan_receipt(request)
