"""Routes package initializer."""

from .error_handlers import register_error_handlers
from .orders_routes import register_orders_routes
from .review_template_routes import register_review_template_routes
from .spapi_routes import register_spapi_routes

__all__ = [
    "register_error_handlers",
    "register_orders_routes",
    "register_review_template_routes",
    "register_spapi_routes",
]
