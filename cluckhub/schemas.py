from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from datetime import date, datetime
from enum import Enum
import re

# ==================== ENUMS ====================

class FlockTypeEnum(str, Enum):
    Broiler = "Broiler"
    Layer = "Layer"

class SaleTypeEnum(str, Enum):
    Birds = "Birds"
    Eggs = "Eggs"

class ExpenditureCategoryEnum(str, Enum):
    Feed = "Feed"
    Medicine = "Medicine"
    Utilities = "Utilities"
    Labor = "Labor"
    Equipment = "Equipment"
    Maintenance = "Maintenance"
    DayOldChicks = "Day Old Chicks"
    Other = "Other"

class ContactTypeEnum(str, Enum):
    Supplier = "Supplier"
    Buyer = "Buyer"

class CurrencyEnum(str, Enum):
    USD = "USD"
    EUR = "EUR"
    KES = "KES"
    NGN = "NGN"

# ==================== USER PROFILE ====================

class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    farm_name: Optional[str] = None
    farm_location: Optional[str] = None
    farm_contact: Optional[str] = None
    currency: Optional[CurrencyEnum] = None

class Profile(BaseModel):
    id: str
    display_name: Optional[str]
    email: Optional[str]
    farm_name: Optional[str]
    farm_location: Optional[str]
    farm_contact: Optional[str]
    currency: Optional[str]

    class Config:
        from_attributes = True

# ==================== FLOCK ====================

class FlockCreate(BaseModel):
    """Totals for cost, feed and eggs are ledger-derived and start at zero"""
    breed: str = Field(min_length=2)
    type: FlockTypeEnum
    count: int = Field(ge=1)
    initial_count: int = Field(ge=1)
    hatch_date: date
    average_weight: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def check_count(self):
        if self.count > self.initial_count:
            raise ValueError("Current count cannot be greater than initial count.")
        return self

class FlockUpdate(BaseModel):
    breed: Optional[str] = Field(default=None, min_length=2)
    type: Optional[FlockTypeEnum] = None
    count: Optional[int] = Field(default=None, ge=0)
    initial_count: Optional[int] = Field(default=None, ge=1)
    hatch_date: Optional[date] = None
    average_weight: Optional[float] = Field(default=None, ge=0)

class Flock(BaseModel):
    id: str
    breed: str
    type: str
    count: int
    initial_count: int
    hatch_date: date
    average_weight: float
    total_feed_consumed: float
    total_cost: float
    egg_production_rate: Optional[float]
    total_eggs_collected: Optional[int]
    eggs_in_stock: Optional[int] = 0

    class Config:
        from_attributes = True

class FlockDeleted(BaseModel):
    message: str
    orphaned_sales: int
    orphaned_expenditures: int

class RecordLoss(BaseModel):
    count: int = Field(ge=1)

class RecordEggs(BaseModel):
    count: int = Field(ge=1)

class FlockMetrics(BaseModel):
    flock_id: str
    age_in_weeks: int
    mortality_rate: float
    feed_conversion_ratio: Optional[float]  # None means N/A
    cost_per_bird: Optional[float]
    egg_production_rate: Optional[float]

# ==================== SALE ====================

class SaleCreate(BaseModel):
    flock_id: str = Field(min_length=1)
    sale_type: SaleTypeEnum = SaleTypeEnum.Birds
    quantity: int = Field(gt=0)
    price_per_unit: float = Field(gt=0)
    customer: str = Field(min_length=2)
    sale_date: date

class Sale(BaseModel):
    id: str
    flock_id: str
    sale_type: str
    quantity: int
    price_per_unit: float
    customer: str
    sale_date: date
    total: float

    class Config:
        from_attributes = True

# ==================== EXPENDITURE ====================

class ExpenditureCreate(BaseModel):
    category: ExpenditureCategoryEnum
    # Positive quantity and amount are checked by the ledger
    quantity: float
    unit_price: float
    description: Optional[str] = None
    expenditure_date: date
    flock_id: Optional[str] = None

    @field_validator("flock_id", "description", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

class Expenditure(BaseModel):
    id: str
    category: str
    quantity: float
    unit_price: float
    amount: float
    description: Optional[str]
    expenditure_date: date
    flock_id: Optional[str]

    class Config:
        from_attributes = True

class ImportFieldIssue(BaseModel):
    field: str  # CSV column name, or "row"
    message: str

class ImportRowError(BaseModel):
    row: int  # header is row 1
    issues: List[ImportFieldIssue]

class ExpenditureImportReport(BaseModel):
    created_count: int
    error_count: int
    created: List[Expenditure]
    errors: List[ImportRowError]

# ==================== CONTACT ====================

class ContactCreate(BaseModel):
    name: str = Field(min_length=2)
    type: ContactTypeEnum
    contact_person: Optional[str] = None
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[str] = None
    products: Optional[str] = None

class Contact(BaseModel):
    id: str
    name: str
    type: str
    contact_person: Optional[str]
    email: str
    phone: Optional[str]
    address: Optional[str]
    products: Optional[str]

    class Config:
        from_attributes = True

# ==================== SENSOR DATA ====================

class SensorReadingCreate(BaseModel):
    temperature: float
    humidity: float = Field(ge=0, le=100)
    ammonia_level: float = Field(ge=0)

class SensorReading(SensorReadingCreate):
    id: str
    timestamp: datetime

    class Config:
        from_attributes = True

# ==================== REPORTS ====================

class FinancialMonth(BaseModel):
    month: str  # YYYY-MM
    revenue: float
    expenditure: float
    profit: float

class FinancialSummary(BaseModel):
    currency: str
    total_revenue: float
    total_expenditure: float
    net_profit: float
    formatted_net_profit: str
    monthly: List[FinancialMonth]

class FlockPerformance(BaseModel):
    flock_id: str
    name: str
    mortality: float
    fcr: Optional[float]
    average_weight: float
    cost_per_bird: Optional[float]

class WeeklyPerformance(BaseModel):
    name: str
    mortality: float
    fcr: Optional[float]
    average_weight: float

class HatchMonthPerformance(BaseModel):
    month: str
    flock_count: int
    birds: int
    average_mortality: Optional[float]
    average_fcr: Optional[float]

class DashboardSummary(BaseModel):
    total_birds: int
    flock_count: int
    mortality_rate: float
    average_fcr: Optional[float]
    average_weight: Optional[float]
    total_eggs_collected: int
    total_revenue: float
    total_expenditure: float
    latest_sensor_reading: Optional[SensorReading]

# ==================== AI ADVISORY ====================

class OptimizeFeedMixInput(BaseModel):
    consumption_patterns: str = Field(min_length=1, description="Historical data on feed consumption patterns.")
    nutrient_requirements: str = Field(min_length=1, description="Specific nutrient requirements for the poultry.")
    current_feed_mix: str = Field(min_length=1, description="The current composition of the feed mix.")
    available_ingredients: str = Field(min_length=1, description="List of available feed ingredients.")

class OptimizeFeedMixOutput(BaseModel):
    optimized_feed_mix: str = Field(description="The optimized feed mix composition.")
    rationale: str = Field(description="Explanation of why the feed mix was optimized this way.")
    estimated_cost_savings: str = Field(description="The estimated cost savings from the optimized feed mix.")
    expected_growth_improvement: str = Field(description="The expected growth improvement from the optimized feed mix.")

class PredictHealthIssuesInput(BaseModel):
    historical_data: str = Field(min_length=10, description="Flock history: age, breed, type, mortality rate and past incidents.")
    real_time_sensor_readings: str = Field(min_length=10, description="Sensor readings and observations about behaviour or consumption.")

class PredictHealthIssuesOutput(BaseModel):
    diagnosis: Optional[str] = Field(default=None, description='A single primary diagnosis, e.g. "Signs of Moderate Heat Stress".')
    potential_health_issues: str = Field(description="A comma-separated list of the most likely potential health issues.")
    risk_levels: str = Field(description='The risk level for each issue, e.g. "Coccidiosis: High, Heat Stress: Medium".')
    recommendations: str = Field(description="Actionable recommendations, highest-risk issue first.")

class PoultryQuestionInput(BaseModel):
    query: str = Field(min_length=1, max_length=2000, description="The farmer's question about poultry management.")

class PoultryQuestionOutput(BaseModel):
    answer: str = Field(description="The answer to the farmer's question.")

DATA_URI_PATTERN = re.compile(r"^data:[\w.+-]+/[\w.+-]+;base64,[A-Za-z0-9+/=\s]+$")

class ScanReceiptInput(BaseModel):
    receipt_image: str = Field(description="Receipt photo as a data URI: 'data:<mimetype>;base64,<encoded_data>'.")

    @field_validator("receipt_image")
    @classmethod
    def check_data_uri(cls, value: str) -> str:
        if not DATA_URI_PATTERN.match(value):
            raise ValueError("receipt_image must be a base64 data URI")
        return value

class ReceiptExtraction(BaseModel):
    """Raw receipt fields as returned by the model, before normalisation"""
    category: str = Field(description="Most likely expense category: Feed, Medicine, Equipment, Utilities, Maintenance, Labor or Other.")
    quantity: Optional[float] = Field(default=None, description="Total quantity of items purchased, if clearly specified.")
    unit_price: Optional[float] = Field(default=None, description="Price per unit, if clearly specified.")
    amount: float = Field(description="The total amount of the expenditure. This is the most important field.")
    description: str = Field(description='A brief summary of items purchased, e.g. "50kg Broiler Feed".')
    expenditure_date: Optional[date] = Field(default=None, description="The date of the expenditure in YYYY-MM-DD format.")

    @field_validator("expenditure_date", mode="before")
    @classmethod
    def blank_date_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

class ScanReceiptOutput(BaseModel):
    category: str
    quantity: float
    unit_price: float
    amount: float
    description: str
    expenditure_date: date
