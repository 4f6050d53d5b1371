"""Static budgeting defaults."""

from __future__ import annotations

from typing import TypedDict


class TemplateItem(TypedDict):
    category: str
    planned_amount: float
    tag: str


# 새 달이 생성될 때 채워지는 기본 예산 카테고리 (원 단위)
BUDGET_TEMPLATE: list[TemplateItem] = [
    {"category": "Household Maintenance & Utilities", "planned_amount": 200000, "tag": "Variable"},
    {"category": "Cats & Pets", "planned_amount": 250000, "tag": "Variable"},
    {"category": "Car Fuel", "planned_amount": 500000, "tag": "Variable"},
    {"category": "Car Garage (Sinking Fund)", "planned_amount": 200000, "tag": "Sinking Fund"},
    {"category": "Weekly Groceries", "planned_amount": 720000, "tag": "Variable"},
    {"category": "Sports & Fitness", "planned_amount": 320000, "tag": "Lifestyle"},
    {"category": "Co-working Space", "planned_amount": 360000, "tag": "Variable"},
    {"category": "Subscriptions", "planned_amount": 72000, "tag": "Fixed"},
    {"category": "Dating & Social", "planned_amount": 400000, "tag": "Lifestyle"},
    {"category": "Travel Fund", "planned_amount": 500000, "tag": "Savings"},
    {"category": "Emergency Buffer", "planned_amount": 2300000, "tag": "Sinking Fund"},
    {"category": "Internet", "planned_amount": 250000, "tag": "Fixed"},
    {"category": "Medical Sinking Fund", "planned_amount": 100000, "tag": "Sinking Fund"},
]

ROLLOVER_CATEGORY = "Rollover Adjustment"
ROLLOVER_TAG = "Variable"

SYNC_WATERMARK_KEY = "last_sync_timestamp"
BACKUP_VERSION = "1.0.0"
