"""Print-ready PDF generation with numeric fidelity checks."""
from .compositor import CompositionSpec, compose
from .embedder import embed_image_to_pdf
from .orchestrator import generate_print_pdf
from .validator import validate_print_pdf

__all__ = [
    "CompositionSpec",
    "compose",
    "embed_image_to_pdf",
    "generate_print_pdf",
    "validate_print_pdf",
]
