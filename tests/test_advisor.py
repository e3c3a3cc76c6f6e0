import asyncio
import json
from datetime import date

import httpx
import openai
import pytest

from cluckhub import schemas
from cluckhub.advisor import build_health_context, normalize_receipt
from cluckhub.errors import UpstreamError

RECEIPT_IMAGE = "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQAAAQABAAD"


def test_feed_mix_optimisation(client, fake_openai):
    fake_openai.chat.completions.replies.append(json.dumps({
        "optimized_feed_mix": "60% maize, 25% soybean meal, 10% fishmeal, 5% premix",
        "rationale": "Raises protein for the grower phase.",
        "estimated_cost_savings": "8%",
        "expected_growth_improvement": "5% better weight gain",
    }))
    r = client.post("/ai/feed-mix", json={
        "consumption_patterns": "120g per bird per day",
        "nutrient_requirements": "22% crude protein",
        "current_feed_mix": "70% maize, 30% soybean meal",
        "available_ingredients": "maize, soybean meal, fishmeal, premix",
    })
    assert r.status_code == 200, r.text
    assert r.json()["estimated_cost_savings"] == "8%"

    call = fake_openai.chat.completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    assert "22% crude protein" in call["messages"][1]["content"]
    assert "optimized_feed_mix" in call["messages"][0]["content"]


def test_health_prediction_without_diagnosis(client, fake_openai):
    fake_openai.chat.completions.replies.append(json.dumps({
        "potential_health_issues": "Heat stress, Coccidiosis",
        "risk_levels": "Heat stress: High, Coccidiosis: Medium",
        "recommendations": "Improve ventilation. Check litter moisture.",
    }))
    r = client.post("/ai/health-prediction", json={
        "historical_data": "Broilers, 5 weeks old, mortality 2%",
        "real_time_sensor_readings": "Temperature 33C, birds panting",
    })
    assert r.status_code == 200, r.text
    assert r.json()["diagnosis"] is None
    assert r.json()["risk_levels"].startswith("Heat stress: High")


def test_health_prediction_input_is_validated(client):
    r = client.post("/ai/health-prediction", json={
        "historical_data": "short",
        "real_time_sensor_readings": "Temperature 33C, birds panting",
    })
    assert r.status_code == 422


def test_health_prediction_context(client, make_flock):
    flock = make_flock()
    client.post("/sensor-data/", json={"temperature": 31.5, "humidity": 70, "ammonia_level": 22})

    r = client.get("/ai/health-prediction/context", params={"flock_id": flock["id"]})
    assert r.status_code == 200
    data = r.json()
    assert "Cobb 500" in data["historical_data"]
    assert "Current Age: 4 weeks" in data["historical_data"]
    assert "Current Count: 100 (started with 100)" in data["historical_data"]
    assert "Temperature: 31.5" in data["real_time_sensor_readings"]


def test_build_health_context_without_readings():
    flock = schemas.Flock(
        id="abc", breed="ISA Brown", type="Layer", count=90, initial_count=100,
        hatch_date=date(2024, 1, 1), average_weight=1.8, total_feed_consumed=0,
        total_cost=0, egg_production_rate=0, total_eggs_collected=0,
    )
    context = build_health_context(flock, today=date(2024, 3, 1))
    assert "Current Age: 8 weeks" in context.historical_data
    assert "Mortality Rate: 10.00%" in context.historical_data
    assert "No sensor readings" in context.real_time_sensor_readings


def test_question_answered(client, fake_openai):
    fake_openai.chat.completions.replies.append(json.dumps({"answer": "Keep litter dry and well ventilated."}))
    r = client.post("/ai/questions", json={"query": "How do I prevent coccidiosis?"})
    assert r.status_code == 200
    assert r.json() == {"answer": "Keep litter dry and well ventilated."}


def test_upstream_failure_is_502(client, fake_openai):
    fake_openai.chat.completions.error = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    )
    r = client.post("/ai/questions", json={"query": "How do I prevent coccidiosis?"})
    assert r.status_code == 502
    assert "try again" in r.json()["detail"]


@pytest.mark.parametrize("reply", ["not json at all", json.dumps({"unexpected": "shape"}), ""])
def test_unusable_reply_is_502(client, fake_openai, reply):
    fake_openai.chat.completions.replies.append(reply)
    r = client.post("/ai/questions", json={"query": "How do I prevent coccidiosis?"})
    assert r.status_code == 502


def test_receipt_scan_fills_quantity_and_unit_price(client, fake_openai):
    fake_openai.chat.completions.replies.append(json.dumps({
        "category": "Feed",
        "amount": 120.0,
        "description": "2 bags layer mash",
        "expenditure_date": "2024-03-05",
    }))
    r = client.post("/ai/receipts", json={"receipt_image": RECEIPT_IMAGE})
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["quantity"] == 1
    assert data["unit_price"] == 120
    assert data["expenditure_date"] == "2024-03-05"

    call = fake_openai.chat.completions.calls[0]
    assert call["model"] == "test-vision-model"
    image_part = call["messages"][1]["content"][1]
    assert image_part == {"type": "image_url", "image_url": {"url": RECEIPT_IMAGE}}


def test_receipt_scan_rejects_non_data_uri(client):
    r = client.post("/ai/receipts", json={"receipt_image": "https://example.com/receipt.jpg"})
    assert r.status_code == 422


def test_normalize_receipt_keeps_total_authoritative():
    extraction = schemas.ReceiptExtraction(
        category="Feed", quantity=4, unit_price=25, amount=120, description="Feed", expenditure_date="",
    )
    result = normalize_receipt(extraction, today=date(2024, 5, 1))
    assert result.quantity == 4
    assert result.unit_price == 30
    assert result.expenditure_date == date(2024, 5, 1)

    consistent = schemas.ReceiptExtraction(
        category="Medicine", quantity=3, unit_price=10, amount=30, description="Vaccines",
    )
    assert normalize_receipt(consistent).unit_price == 10


def test_normalize_receipt_without_total():
    extraction = schemas.ReceiptExtraction(category="Other", amount=0, description="Blurry")
    with pytest.raises(UpstreamError):
        normalize_receipt(extraction)


def test_advisor_used_directly(fake_openai):
    from cluckhub.advisor import PoultryAdvisor

    fake_openai.chat.completions.replies.append(json.dumps({"answer": "Yes."}))
    advisor = PoultryAdvisor(client=fake_openai, model="direct-model")
    result = asyncio.run(advisor.answer_poultry_question(schemas.PoultryQuestionInput(query="Is 21 days right?")))
    assert result.answer == "Yes."
    assert fake_openai.chat.completions.calls[0]["model"] == "direct-model"
