from .service import OrderService

__all__ = ["OrderService"]
