"""
Test cases for bill category inference
"""

import pytest

from voterchat.models.schemas import CategoryScore
from voterchat.services.classifier_service import CATEGORIES, KEYWORDS, ClassifierService, KeywordClassifier


class BrokenModel:
    async def classify(self, text):
        raise RuntimeError("model unavailable")


class StaticModel:
    def __init__(self):
        self.texts = []

    async def classify(self, text):
        self.texts.append(text)
        return [CategoryScore(category="Energy", score=0.8)]


def test_every_category_has_keywords():
    assert set(KEYWORDS) == set(CATEGORIES)


@pytest.mark.asyncio
async def test_keyword_classifier_returns_top_three():
    scores = await KeywordClassifier().classify(
        "School health clinics: tax credits for hospital and medical staff, farm road bridge repair"
    )

    assert len(scores) == 3
    assert scores[0].category == "Healthcare"
    assert scores == sorted(scores, key=lambda s: s.score, reverse=True)


@pytest.mark.asyncio
async def test_no_keywords_means_no_categories():
    assert await KeywordClassifier().classify("An act relating to nothing in particular") == []


@pytest.mark.asyncio
async def test_model_result_is_used():
    model = StaticModel()

    scores = await ClassifierService(primary=model).classify_bill("Solar credits", "Extends credits")

    assert scores[0].category == "Energy"
    assert model.texts == ["Solar credits\nExtends credits"]


@pytest.mark.asyncio
async def test_model_failure_falls_back_to_keywords():
    scores = await ClassifierService(primary=BrokenModel()).classify_bill("Teacher pay", "Raises school salaries")

    assert scores[0].category == "Education"


@pytest.mark.asyncio
async def test_empty_bill_text_has_no_categories():
    assert await ClassifierService(primary=StaticModel()).classify_bill("", "") == []
