# API handlers and routes module
from .handlers import VERSION, APIHandlers
from .routes import register_routes

__all__ = ["VERSION", "APIHandlers", "register_routes"]
