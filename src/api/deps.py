"""FastAPI dependency injection functions."""

from typing import Annotated

from fastapi import Depends, Path

from src.services.order_lifecycle_service import OrderLifecycleService, get_order_lifecycle_service


def get_lifecycle_service() -> OrderLifecycleService:
    """Provide the order lifecycle service.

    Tests swap the service through ``app.dependency_overrides``.
    """
    return get_order_lifecycle_service()


LifecycleService = Annotated[OrderLifecycleService, Depends(get_lifecycle_service)]

# Path parameters shared by the order routes
OrderId = Annotated[str, Path(min_length=1, max_length=64, description="Order UUID")]
BasketNumber = Annotated[int, Path(ge=1, description="1-based basket number")]
