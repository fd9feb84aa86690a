import asyncio
import logging
from typing import Dict, List, Optional

from voterchat.models.schemas import CategoryScore

logger = logging.getLogger(__name__)

CATEGORIES = [
    "Healthcare",
    "Education",
    "Infrastructure",
    "Environment",
    "Finance",
    "Technology",
    "Social Services",
    "Defense",
    "Agriculture",
    "Labor",
    "Energy",
    "Transportation",
    "Justice",
    "Housing",
    "Foreign Affairs",
]

KEYWORDS: Dict[str, List[str]] = {
    "Healthcare": ["health", "medical", "hospital", "medicare", "medicaid"],
    "Education": ["education", "school", "student", "teacher", "learning"],
    "Infrastructure": ["infrastructure", "road", "bridge", "construction"],
    "Environment": ["environment", "climate", "pollution", "conservation"],
    "Finance": ["finance", "tax", "budget", "banking", "investment"],
    "Technology": ["technology", "digital", "internet", "cyber", "data"],
    "Social Services": ["welfare", "social", "community", "assistance"],
    "Defense": ["defense", "military", "veteran", "armed forces"],
    "Agriculture": ["agriculture", "farm", "crop", "livestock"],
    "Labor": ["labor", "employment", "wage", "worker", "union"],
    "Energy": ["energy", "electric", "utility", "solar", "oil"],
    "Transportation": ["transportation", "transit", "highway", "vehicle", "traffic"],
    "Justice": ["court", "criminal", "justice", "sentencing", "police"],
    "Housing": ["housing", "rent", "tenant", "mortgage", "landlord"],
    "Foreign Affairs": ["foreign", "international", "treaty", "trade"],
}

TOP_K = 3


class KeywordClassifier:
    """Rule-based fallback: scores categories by keyword hits"""

    def __init__(self, keywords: Optional[Dict[str, List[str]]] = None, top_k: int = TOP_K):
        self.keywords = keywords or KEYWORDS
        self.top_k = top_k

    async def classify(self, text: str) -> List[CategoryScore]:
        lowered = text.lower()
        scores = []
        for category, words in self.keywords.items():
            hits = sum(1 for word in words if word in lowered)
            if hits:
                scores.append(CategoryScore(category=category, score=hits / len(words)))
        scores.sort(key=lambda item: item.score, reverse=True)
        return scores[:self.top_k]


class ZeroShotClassifier:
    """Zero-shot NLI classifier over the fixed bill categories.

    The transformers pipeline is created on first use and shared by every
    caller; inference runs in a worker thread.
    """

    def __init__(self, model_name: str = "cross-encoder/nli-deberta-v3-xsmall",
                 categories: Optional[List[str]] = None, top_k: int = TOP_K):
        self.model_name = model_name
        self.categories = categories or CATEGORIES
        self.top_k = top_k
        self.pipeline = None
        self._lock = asyncio.Lock()

    async def _get_pipeline(self):
        if self.pipeline is None:
            async with self._lock:
                if self.pipeline is None:
                    logger.info("Loading zero-shot classifier %s", self.model_name)
                    from transformers import pipeline
                    self.pipeline = await asyncio.to_thread(
                        pipeline, "zero-shot-classification", model=self.model_name
                    )
        return self.pipeline

    async def classify(self, text: str) -> List[CategoryScore]:
        classifier = await self._get_pipeline()
        result = await asyncio.to_thread(classifier, text[:2000], self.categories)
        scores = [
            CategoryScore(category=label, score=float(score))
            for label, score in zip(result["labels"], result["scores"])
        ]
        scores.sort(key=lambda item: item.score, reverse=True)
        return scores[:self.top_k]


class ClassifierService:
    """Infers bill categories, falling back to keywords when the model fails"""

    def __init__(self, primary=None, fallback: Optional[KeywordClassifier] = None):
        self.primary = primary
        self.fallback = fallback or KeywordClassifier()

    async def classify_bill(self, title: str, description: str) -> List[CategoryScore]:
        text = f"{title}\n{description}".strip()
        if not text:
            return []
        if self.primary is not None:
            try:
                return await self.primary.classify(text)
            except Exception as e:
                logger.warning("Zero-shot classification failed, using keywords: %s", e)
        return await self.fallback.classify(text)
