"""
Poultry advisory service.

Wraps the OpenAI chat API for four request/response flows: feed-mix
optimisation, health-issue prediction, general Q&A and receipt scanning.
Each flow fills a fixed prompt template, asks for a JSON object shaped like
its output model and validates the reply. No retries: a failed call is a
single UpstreamError and the user may resubmit.
"""
import json
import logging
import time
from datetime import date, datetime
from typing import Optional, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError as SchemaValidationError

from . import metrics, schemas
from .config import get_settings
from .errors import UpstreamError

logger = logging.getLogger(__name__)

OutputT = TypeVar("OutputT", bound=BaseModel)

FEED_MIX_PROMPT = """You are an expert in poultry nutrition and feed optimization. Your goal is to analyze feed consumption patterns, nutrient requirements, and available ingredients to recommend an optimized feed mix that maximizes growth and health while minimizing costs.

Analyze the following data to provide an optimized feed mix:

Consumption Patterns: {consumption_patterns}
Nutrient Requirements: {nutrient_requirements}
Current Feed Mix: {current_feed_mix}
Available Ingredients: {available_ingredients}

Provide the optimized feed mix composition, a rationale for the changes, the estimated cost savings, and the expected growth improvement."""

HEALTH_PROMPT = """You are a veterinary AI specializing in poultry health diagnostics. Your goal is to identify potential health risks based on the provided data and suggest actionable, prioritized recommendations.

Flock History & Vitals:
{historical_data}

Current Conditions & Observations:
{real_time_sensor_readings}

Your Task:
1. Form a Primary Diagnosis: a single, conclusive diagnosis that summarizes the main issue.
2. Identify All Risks: consider how the current sensor readings correlate with the flock's history and age.
3. Assess Risk Level: assign High, Medium or Low to each potential issue. Abnormal readings combined with relevant history should elevate the risk.
4. Provide Recommendations: clear, practical steps, starting with the highest priority.

Provide a concise and structured response."""

QUESTION_PROMPT = """You are an expert consultant in poultry farm management, specializing in sustainable and profitable practices. A farmer has a question. Provide a clear, comprehensive, and actionable answer.

Farmer's Question: {query}"""

RECEIPT_PROMPT = """You are an intelligent receipt scanner for a poultry farm. Analyze the attached receipt image and extract the expenditure details.
Your primary goal is to accurately identify the total amount.
If a date is present, extract it in YYYY-MM-DD format. If not, leave it empty.
Summarize the items into a short description.
Categorize the expense as one of: Feed, Medicine, Equipment, Utilities, Maintenance, Labor, Other.
Only give quantity and unit price when both are clearly printed."""


def _output_instructions(output_model: Type[BaseModel]) -> str:
    schema = json.dumps(output_model.model_json_schema(), indent=2)
    return f"Respond only with a JSON object that validates against this JSON schema:\n{schema}"


def build_health_context(flock, reading=None, today: Optional[date] = None) -> schemas.PredictHealthIssuesInput:
    """Pre-fill a health prediction request from a flock and its latest sensor reading."""
    history = (
        f"- Breed: {flock.breed}\n"
        f"- Type: {flock.type}\n"
        f"- Current Age: {metrics.age_in_weeks(flock.hatch_date, today)} weeks\n"
        f"- Current Count: {flock.count} (started with {flock.initial_count})\n"
        f"- Mortality Rate: {metrics.mortality_rate(flock):.2f}%"
    )
    if reading is not None:
        conditions = (
            f"- Temperature: {reading.temperature}°C\n"
            f"- Humidity: {reading.humidity}%\n"
            f"- Ammonia: {reading.ammonia_level} ppm"
        )
    else:
        conditions = "- No sensor readings recorded yet."
    return schemas.PredictHealthIssuesInput(
        historical_data=history,
        real_time_sensor_readings=conditions,
    )


def normalize_receipt(extraction: schemas.ReceiptExtraction, today: Optional[date] = None) -> schemas.ScanReceiptOutput:
    """The total is authoritative; quantity and unit price are made to agree with it."""
    if extraction.amount <= 0:
        raise UpstreamError("Could not read a total amount from the receipt.")
    quantity = extraction.quantity if extraction.quantity and extraction.quantity > 0 else 1
    unit_price = extraction.unit_price
    if not unit_price or abs(quantity * unit_price - extraction.amount) > 0.01:
        unit_price = round(extraction.amount / quantity, 2)
    return schemas.ScanReceiptOutput(
        category=extraction.category,
        quantity=quantity,
        unit_price=unit_price,
        amount=extraction.amount,
        description=extraction.description,
        expenditure_date=extraction.expenditure_date or today or datetime.utcnow().date(),
    )


class PoultryAdvisor:
    """
    Service class for the AI advisory flows.
    The OpenAI client is created lazily so the rest of the API works without a key.
    """

    def __init__(self, client=None, model: Optional[str] = None, vision_model: Optional[str] = None):
        settings = get_settings()
        self._client = client
        self.model = model or settings.openai_model
        self.vision_model = vision_model or settings.openai_vision_model

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = AsyncOpenAI(api_key=get_settings().openai_api_key, max_retries=0)
            except openai.OpenAIError as e:
                raise UpstreamError(f"The AI service is not configured: {e}")
        return self._client

    async def _generate(
        self,
        flow: str,
        prompt: str,
        output_model: Type[OutputT],
        model: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> OutputT:
        model = model or self.model
        content = prompt
        if image_url:
            content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]
        messages = [
            {"role": "system", "content": _output_instructions(output_model)},
            {"role": "user", "content": content},
        ]

        start_time = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0.4,
            )
        except openai.OpenAIError as e:
            logger.error("%s call to %s failed: %s", flow, model, e)
            raise UpstreamError(f"The AI service could not complete the {flow} request. Please try again.")

        raw = response.choices[0].message.content if response.choices else None
        if not raw:
            logger.error("%s returned an empty reply", flow)
            raise UpstreamError(f"The AI service returned no {flow} result. Please try again.")

        try:
            result = output_model.model_validate_json(raw)
        except SchemaValidationError as e:
            logger.error("%s reply failed validation: %s", flow, e)
            raise UpstreamError(f"The AI service returned an unusable {flow} result. Please try again.")

        logger.info("%s answered by %s in %d ms", flow, model, int((time.monotonic() - start_time) * 1000))
        return result

    async def optimize_feed_mix(self, data: schemas.OptimizeFeedMixInput) -> schemas.OptimizeFeedMixOutput:
        prompt = FEED_MIX_PROMPT.format(**data.model_dump())
        return await self._generate("feed optimization", prompt, schemas.OptimizeFeedMixOutput)

    async def predict_health_issues(self, data: schemas.PredictHealthIssuesInput) -> schemas.PredictHealthIssuesOutput:
        prompt = HEALTH_PROMPT.format(**data.model_dump())
        return await self._generate("health prediction", prompt, schemas.PredictHealthIssuesOutput)

    async def answer_poultry_question(self, data: schemas.PoultryQuestionInput) -> schemas.PoultryQuestionOutput:
        prompt = QUESTION_PROMPT.format(**data.model_dump())
        return await self._generate("poultry question", prompt, schemas.PoultryQuestionOutput)

    async def scan_receipt(self, data: schemas.ScanReceiptInput) -> schemas.ScanReceiptOutput:
        extraction = await self._generate(
            "receipt scan",
            RECEIPT_PROMPT,
            schemas.ReceiptExtraction,
            model=self.vision_model,
            image_url=data.receipt_image,
        )
        return normalize_receipt(extraction)


_advisor: Optional[PoultryAdvisor] = None


def get_advisor() -> PoultryAdvisor:
    """FastAPI dependency returning the shared advisor."""
    global _advisor
    if _advisor is None:
        _advisor = PoultryAdvisor()
    return _advisor
