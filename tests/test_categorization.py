from categorization import LearningCategorizer, resolve_category
from models import UNCATEGORIZED


def test_exact_and_fuzzy_suggestions():
    categorizer = LearningCategorizer()
    categorizer.record("Netflix", "Subscriptions")
    categorizer.record("Weekly groceries", "Groceries")

    assert categorizer.suggest("netflix") == "Subscriptions"
    assert categorizer.suggest("  Weekly   Groceries ") == "Groceries"
    assert categorizer.suggest("weekly grocerys") == "Groceries"
    assert categorizer.suggest("Plane tickets") is None


def test_most_frequent_category_wins():
    categorizer = LearningCategorizer()
    categorizer.record("Lunch", "Food")
    categorizer.record("Lunch", "Food")
    categorizer.record("Lunch", "Work")
    assert categorizer.suggest("lunch") == "Food"


def test_empty_inputs_are_ignored():
    categorizer = LearningCategorizer()
    categorizer.record("", "Food")
    categorizer.record("Lunch", "  ")
    assert categorizer.suggest("Lunch") is None
    assert categorizer.suggest("") is None


def test_resolve_category_fallbacks():
    categorizer = LearningCategorizer()
    categorizer.record("Netflix", "Subscriptions")

    assert resolve_category("Netflix", "Entertainment", categorizer) == "Entertainment"
    assert resolve_category("Netflix", None, categorizer) == "Subscriptions"
    assert resolve_category("Bakery", None, categorizer) == UNCATEGORIZED
    assert resolve_category("Bakery", None, None) == UNCATEGORIZED
