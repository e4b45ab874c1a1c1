"""
Core Data Models for budgetkeeper

These models define the strict schemas for the four entity kinds the
collection store persists. They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Round-trip through the JSON documents on disk unchanged

DESIGN DECISION: Amounts are Decimals, never floats. Pydantic serializes
them as strings in JSON mode, so no precision is lost on disk.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


def utc_now() -> datetime:
    """Timezone-aware current time used for created_at/updated_at."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class EntityKind(str, Enum):
    """
    The collections held by the store.

    The value doubles as the document file name: <data_dir>/<user_id>/<value>.json
    """
    USERS = "users"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    RECURRING = "recurring"


class TransactionType(str, Enum):
    """Direction of money flow."""
    INCOME = "income"
    EXPENSE = "expense"


class Frequency(str, Enum):
    """Calendar step applied to a recurring rule's next due date."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


MAX_AMOUNT = Decimal("999999999")

Amount = Annotated[
    Decimal,
    Field(gt=0, le=MAX_AMOUNT, decimal_places=2, description="Positive amount"),
]


# =============================================================================
# ENTITIES
# =============================================================================

class User(BaseModel):
    """
    A budget owner.

    Owns every other entity transitively; its id names the on-disk directory.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def owner_id(self) -> UUID:
        return self.id


class Category(BaseModel):
    """A user-defined bucket for transactions of one type."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=50)
    type: TransactionType
    icon: str = Field(default="", max_length=50)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def default_icon(self) -> 'Category':
        if not self.icon:
            self.icon = "📋" if self.type == TransactionType.EXPENSE else "💰"
        return self

    @property
    def owner_id(self) -> UUID:
        return self.user_id


class Transaction(BaseModel):
    """
    A single income or expense entry.

    CRITICAL: is_recurring and recurring_id travel together. A transaction
    generated from a rule has both set; a manual one has neither.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    category_id: UUID
    amount: Amount
    type: TransactionType
    date: date
    notes: str = Field(default="", max_length=500)
    is_recurring: bool = False
    recurring_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def validate_recurring_link(self) -> 'Transaction':
        if self.is_recurring and self.recurring_id is None:
            raise ValueError("Recurring transactions must reference their rule")
        if not self.is_recurring and self.recurring_id is not None:
            raise ValueError("Manual transactions cannot reference a recurring rule")
        return self

    @property
    def owner_id(self) -> UUID:
        return self.user_id


class RecurringRule(BaseModel):
    """
    Template that periodically materializes transactions.

    next_due_date starts at start_date and is only ever moved forward by
    the engine, or reset explicitly by the user.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    category_id: UUID
    amount: Amount
    type: TransactionType
    frequency: Frequency
    start_date: date
    next_due_date: Optional[date] = None
    notes: str = Field(default="", max_length=500)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def default_next_due_date(self) -> 'RecurringRule':
        if self.next_due_date is None:
            self.next_due_date = self.start_date
        return self

    @property
    def owner_id(self) -> UUID:
        return self.user_id


# Entity class stored in each collection
KIND_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.USERS: User,
    EntityKind.CATEGORIES: Category,
    EntityKind.TRANSACTIONS: Transaction,
    EntityKind.RECURRING: RecurringRule,
}


# Seeded for every new user
DEFAULT_CATEGORIES: list[tuple[str, TransactionType, str]] = [
    ("Groceries", TransactionType.EXPENSE, "🛒"),
    ("Rent", TransactionType.EXPENSE, "🏠"),
    ("Utilities", TransactionType.EXPENSE, "💡"),
    ("Transportation", TransactionType.EXPENSE, "🚗"),
    ("Entertainment", TransactionType.EXPENSE, "🎬"),
    ("Dining Out", TransactionType.EXPENSE, "🍽️"),
    ("Healthcare", TransactionType.EXPENSE, "🏥"),
    ("Shopping", TransactionType.EXPENSE, "🛍️"),
    ("Subscriptions", TransactionType.EXPENSE, "📱"),
    ("Insurance", TransactionType.EXPENSE, "🛡️"),
    ("Education", TransactionType.EXPENSE, "📚"),
    ("Personal Care", TransactionType.EXPENSE, "💅"),
    ("Other Expense", TransactionType.EXPENSE, "📋"),
    ("Salary", TransactionType.INCOME, "💰"),
    ("Freelance", TransactionType.INCOME, "💻"),
    ("Investments", TransactionType.INCOME, "📈"),
    ("Gifts", TransactionType.INCOME, "🎁"),
    ("Refunds", TransactionType.INCOME, "💵"),
    ("Other Income", TransactionType.INCOME, "✨"),
]
