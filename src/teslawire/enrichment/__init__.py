from .engine import EnrichmentEngine
from .validate import validate_generated_html

__all__ = ["EnrichmentEngine", "validate_generated_html"]
