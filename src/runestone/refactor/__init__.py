"""Source transforms applied by the operation handlers."""

from .extract import Extraction, ExtractionPlan, apply_extraction, plan_extraction
from .imports import add_reexports, defer_import, redirect_private_import, remove_unused_imports

__all__ = [
    "Extraction",
    "ExtractionPlan",
    "add_reexports",
    "apply_extraction",
    "defer_import",
    "plan_extraction",
    "redirect_private_import",
    "remove_unused_imports",
]
