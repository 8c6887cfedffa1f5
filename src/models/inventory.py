"""Inventory deduction type definitions."""

from pydantic import BaseModel, ConfigDict, Field


class InventoryLine(BaseModel):
    """Product quantity to take from or return to stock."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    quantity: int = Field(gt=0)


class DeductedProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    quantity: int


class FailedProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    error: str


class InventoryDeductionResult(BaseModel):
    """Outcome of a deduction or restore.

    ``success`` is true only when ``failed_products`` is empty.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    deducted_products: tuple[DeductedProduct, ...] = ()
    failed_products: tuple[FailedProduct, ...] = ()

    @classmethod
    def empty(cls) -> "InventoryDeductionResult":
        return cls(success=True)
