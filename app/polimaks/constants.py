"""
Central constants for the Polimaks application.
"""
from __future__ import annotations

CURRENCIES = ("UZS", "USD", "RUB", "EUR")
# Cash book and client ledgers only track these two.
LEDGER_CURRENCIES = ("UZS", "USD")

# Film (plyonka) categories and their sub-categories
FILM_CATEGORIES: dict[str, tuple[str, ...]] = {
    "BOPP": ("prazrachniy", "metal", "jemchuk", "jemchuk metal"),
    "CPP": ("prazrachniy", "beliy", "metal"),
    "PE": ("prazrachniy", "beliy"),
    "PET": ("prazrachniy", "metal", "beliy"),
}

# Solvent (razvaritel) types and density in kg per liter
SOLVENT_DENSITIES: dict[str, float] = {
    "eaf": 0.78,
    "etilin": 0.88,
    "metoksil": 0.89,
}
DEFAULT_SOLVENT_DENSITY = 0.8

MACHINE_TYPES = ("pechat", "reska", "laminatsiya")

CYLINDER_ORIGINS = ("china", "local")

FINISHED_PRODUCT_LOCATIONS = ("tashkent", "angren")

STAFF_ROLES = ("worker", "crm", "accountant", "planner")

CRM_STATUSES = ("interested", "very_interested", "not_interested", "follow_up")

COMPLAINT_STATUSES = ("open", "in_progress", "resolved")
MACHINE_COMPLAINT_STATUSES = ("open", "resolved")

FINANCE_METHODS = ("cash", "transfer")
FINANCE_DIRECTIONS = ("income", "expense")

CLIENT_TRANSACTION_TYPES = ("promise", "payment")

# Default machines seeded on a fresh database
DEFAULT_MACHINES: dict[str, tuple[str, ...]] = {
    "pechat": ("Pechat 1", "Pechat 2"),
    "reska": ("Reska 1", "Reska 2"),
    "laminatsiya": ("Laminatsiya 1",),
}
