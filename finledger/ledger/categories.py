"""
Default categories.

Every user gets the same set of default categories. Their ids are derived
from the user id and the category name, so they can be resolved without a
database round-trip and are stable across processes.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID, uuid5

from finledger.models.ledger import Category


DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("Food", "food"),
    ("Transport", "car"),
    ("Health", "health"),
    ("Education", "education"),
    ("Leisure", "entertainment"),
    ("Housing", "home"),
    ("Shopping", "shopping"),
    ("Bills", "bills"),
    ("Salary", "salary"),
    ("Freelance", "freelance"),
    ("Investments", "investment"),
    ("Goals", "target"),
    ("Other", "other"),
)

GOALS_CATEGORY = "Goals"
INVESTMENTS_CATEGORY = "Investments"

# Fixed namespace; changing it changes every default category id
CATEGORY_NAMESPACE = UUID("6f1c2a8e-3d4b-5c6d-9e7f-0a1b2c3d4e5f")


class DefaultCategoryResolver(ABC):
    """Resolves default category ids for a user."""

    @abstractmethod
    def category_id(self, user_id: UUID, name: str) -> UUID:
        pass

    @abstractmethod
    def default_categories(self, user_id: UUID) -> list[Category]:
        pass

    def is_default(self, user_id: UUID, category_id: UUID) -> bool:
        return self.find(user_id, category_id) is not None

    def find(self, user_id: UUID, category_id: UUID) -> Optional[Category]:
        for category in self.default_categories(user_id):
            if category.id == category_id:
                return category
        return None


class ContentAddressedCategoryResolver(DefaultCategoryResolver):
    """
    Ids are uuid5("default_category:<user_id>:<name>").
    """

    def category_id(self, user_id: UUID, name: str) -> UUID:
        return uuid5(CATEGORY_NAMESPACE, f"default_category:{user_id}:{name}")

    def default_categories(self, user_id: UUID) -> list[Category]:
        return [
            Category(
                id=self.category_id(user_id, name),
                user_id=user_id,
                name=name,
                icon=icon,
                is_default=True,
            )
            for name, icon in DEFAULT_CATEGORIES
        ]
