from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Optional

import google.generativeai as genai
from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein

from config import Settings
from errors import ExternalServiceFailure, ValidationFailed
from models import EXPENSE_CATEGORIES
from periods import to_naive_utc
from schemas import ReceiptScan

if TYPE_CHECKING:  # pragma: no cover
    from services import MonthlyStats

logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/heic", "image/heif")

_CODE_FENCE = re.compile(r"```(?:json)?\n?")

RECEIPT_PROMPT = f"""
Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: {",".join(EXPENSE_CATEGORIES)})

Only respond with valid JSON in this exact format:
{{
  "amount": number,
  "date": "ISO date string",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}}

If it's not a receipt, return an empty object
"""


def build_model(settings: Settings) -> Optional[genai.GenerativeModel]:
    if not settings.gemini_api_key:
        return None
    genai.configure(api_key=settings.gemini_api_key)
    return genai.GenerativeModel(model_name=settings.gemini_model)


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).strip()


def snap_category(value: Optional[str]) -> str:
    """Nearest allowed expense category, within two edits, else other-expense."""
    clean = (value or "").strip().lower()
    if not clean:
        return "other-expense"
    if clean in EXPENSE_CATEGORIES:
        return clean
    best = min(EXPENSE_CATEGORIES, key=lambda c: Levenshtein.distance(clean, c))
    if Levenshtein.distance(clean, best) <= 2:
        return best
    return "other-expense"


class ReceiptScanner:
    def __init__(self, model: Any, timeout_secs: float = 30) -> None:
        self.model = model
        self.timeout_secs = timeout_secs

    def scan(self, image: bytes, mime_type: str) -> ReceiptScan:
        if mime_type not in ALLOWED_IMAGE_TYPES:
            raise ValidationFailed(f"Unsupported file type: {mime_type}")
        if not image:
            raise ValidationFailed("Empty file")
        if self.model is None:
            raise ExternalServiceFailure("Receipt scanning is not configured")

        try:
            response = self.model.generate_content(
                [{"mime_type": mime_type, "data": image}, RECEIPT_PROMPT],
                request_options={"timeout": self.timeout_secs},
            )
            text = strip_code_fences(response.text)
        except Exception as exc:
            logger.exception("receipt_scan_failed")
            raise ExternalServiceFailure("Failed to scan receipt") from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error(f"receipt_scan_unparseable: text={text[:200]!r}")
            raise ExternalServiceFailure("Invalid response format from Gemini") from exc
        if not isinstance(data, dict):
            raise ExternalServiceFailure("Invalid response format from Gemini")
        if not data:
            raise ValidationFailed("The image does not look like a receipt")

        try:
            scan = ReceiptScan(
                amount=data.get("amount"),
                date=data.get("date") or None,
                description=data.get("description"),
                merchant_name=data.get("merchantName"),
                category=snap_category(data.get("category")),
            )
        except ValidationError as exc:
            raise ExternalServiceFailure("Invalid response format from Gemini") from exc

        if scan.date is not None:
            scan.date = to_naive_utc(scan.date)
        return scan


class InsightGenerator:
    def __init__(self, model: Any, timeout_secs: float = 30) -> None:
        self.model = model
        self.timeout_secs = timeout_secs

    @staticmethod
    def build_prompt(stats: MonthlyStats, month_name: str) -> str:
        categories = ", ".join(
            f"{category}: ${amount:.2f}" for category, amount in stats.by_category.items()
        )
        return f"""
Analyze this financial data and provide 3 concise, actionable insights.
Focus on spending patterns and practical advice.
Keep it friendly and conversational.

Financial Data for {month_name}:
- Total Income: ${stats.total_income:.2f}
- Total Expenses: ${stats.total_expenses:.2f}
- Net Income: ${stats.net:.2f}
- Expense Categories: {categories or "none"}

Format the response as a JSON array of strings, like this:
["insight 1", "insight 2", "insight 3"]
"""

    def generate(self, stats: MonthlyStats, month_name: str) -> list[str]:
        """Three insight strings; the fixed fallbacks whenever the model lets us down."""
        if self.model is None:
            return list(FALLBACK_INSIGHTS)
        try:
            response = self.model.generate_content(
                self.build_prompt(stats, month_name),
                request_options={"timeout": self.timeout_secs},
            )
            insights = json.loads(strip_code_fences(response.text))
        except Exception:
            logger.exception("insights_failed: using fallback insights")
            return list(FALLBACK_INSIGHTS)

        if not isinstance(insights, list) or not all(
            isinstance(item, str) and item.strip() for item in insights
        ):
            logger.warning("insights_failed: unexpected shape, using fallback insights")
            return list(FALLBACK_INSIGHTS)
        insights = [item.strip() for item in insights[:3]]
        insights.extend(FALLBACK_INSIGHTS[len(insights):])
        return insights
