"""
Bulk expenditure import from CSV, and the matching download template.

Rows are validated one by one; a bad row is reported with its row number
and the failing columns and is left out, while the good rows go through
the ledger exactly as if entered by hand.
"""
import csv
import io
import logging
from dataclasses import dataclass, field

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger, schemas
from .errors import AccessError, PartialConsistencyError, ValidationError

logger = logging.getLogger(__name__)

CSV_HEADERS = ["category", "quantity", "unitPrice", "description", "expenditureDate", "flockId"]
REQUIRED_COLUMNS = {"category", "quantity", "unitPrice", "expenditureDate"}

# CSV column -> ExpenditureCreate field
FIELD_FOR_COLUMN = {
    "category": "category",
    "quantity": "quantity",
    "unitPrice": "unit_price",
    "description": "description",
    "expenditureDate": "expenditure_date",
    "flockId": "flock_id",
}
COLUMN_FOR_FIELD = {value: key for key, value in FIELD_FOR_COLUMN.items()}

TEMPLATE_ROWS = [
    ["Feed", "50", "25.50", "50kg Broiler Feed", "2023-10-26", "your_flock_id_here"],
    ["Utilities", "1", "40.00", "Electricity bill", "2023-10-31", ""],
]


@dataclass
class ParsedExpenditureRow:
    row_number: int
    data: schemas.ExpenditureCreate


@dataclass
class ExpenditureCsvParse:
    rows: list[ParsedExpenditureRow] = field(default_factory=list)
    errors: list[schemas.ImportRowError] = field(default_factory=list)


def _column_for(loc) -> str:
    if not loc:
        return "row"
    return COLUMN_FOR_FIELD.get(str(loc[0]), str(loc[0]))


def parse_expenditure_csv(text: str) -> ExpenditureCsvParse:
    """Parse and validate each data row. Raises ValidationError only for a bad header."""
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    headers = {name.strip() for name in (reader.fieldnames or []) if name}
    missing = REQUIRED_COLUMNS - headers
    if missing:
        raise ValidationError(
            f"CSV is missing required columns: {', '.join(sorted(missing))}. "
            f"Expected header: {','.join(CSV_HEADERS)}",
            field="file",
        )

    result = ExpenditureCsvParse()
    for raw in reader:
        row_number = reader.line_num
        cells = {(key or "").strip(): (value or "").strip() for key, value in raw.items() if isinstance(value, str)}
        if not any(cells.values()):
            continue

        payload = {FIELD_FOR_COLUMN[column]: cells.get(column, "") for column in CSV_HEADERS}
        try:
            data = schemas.ExpenditureCreate.model_validate(payload)
        except SchemaValidationError as e:
            result.errors.append(schemas.ImportRowError(
                row=row_number,
                issues=[
                    schemas.ImportFieldIssue(field=_column_for(err["loc"]), message=err["msg"])
                    for err in e.errors()
                ],
            ))
            continue
        result.rows.append(ParsedExpenditureRow(row_number=row_number, data=data))
    return result


async def import_expenditures(session: AsyncSession, owner_id: str, text: str) -> schemas.ExpenditureImportReport:
    parsed = parse_expenditure_csv(text)
    errors = list(parsed.errors)
    created = []

    for row in parsed.rows:
        try:
            expenditure = await ledger.record_expenditure(session, owner_id, row.data)
        except (ValidationError, PartialConsistencyError) as e:
            column = COLUMN_FOR_FIELD.get(getattr(e, "field", None) or "", getattr(e, "field", None) or "row")
            errors.append(schemas.ImportRowError(
                row=row.row_number,
                issues=[schemas.ImportFieldIssue(field=column, message=e.message)],
            ))
            continue
        except AccessError as e:
            errors.append(schemas.ImportRowError(
                row=row.row_number,
                issues=[schemas.ImportFieldIssue(field="flockId", message=e.message)],
            ))
            continue
        created.append(schemas.Expenditure.model_validate(expenditure))

    errors.sort(key=lambda error: error.row)
    logger.info("Imported %d expenditures for %s, %d rows rejected", len(created), owner_id, len(errors))
    return schemas.ExpenditureImportReport(
        created_count=len(created),
        error_count=len(errors),
        created=created,
        errors=errors,
    )


def expenditure_template_csv() -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    writer.writerows(TEMPLATE_ROWS)
    return buffer.getvalue()
