# api/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — HTTP LAYER
# ============================================================================
# FastAPI app factory and the /payment routes.
# ============================================================================

from api.server import create_app, configure_logging
from api.container import PaymentServices

__all__ = [
    "create_app",
    "configure_logging",
    "PaymentServices",
]
