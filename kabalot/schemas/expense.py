"""
Pydantic models describing normalized expense data.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ExpenseRecord(BaseModel):
    """Canonical expense extracted from one receipt, expressed in the ledger currency."""

    model_config = ConfigDict(frozen=True)

    file_name: str = Field(..., description="Base name of the source document.")
    business_name: str = Field("", description="Vendor name as printed on the receipt.")
    business_number: str = Field("", description="Vendor registration / tax number.")
    invoice_number: str = Field("", description="Invoice or receipt number.")
    date: str = Field(..., description="Invoice date formatted as yyyy-MM-dd.")
    price_without_vat: float = Field(0.0, description="Amount excluding tax.")
    vat: float = Field(0.0, description="Tax amount.")
    total_price: float = Field(0.0, description="Total amount in the ledger currency.")
    original_total_foreign: Optional[float] = Field(
        None,
        description="Pre-conversion total when the receipt was issued in foreign currency.",
    )
    currency: str = Field("ILS", description="Ledger currency the amounts are expressed in.")
    source_currency: str = Field("ILS", description="Currency detected on the source document.")

    @property
    def was_converted(self) -> bool:
        return self.original_total_foreign is not None


__all__ = ["ExpenseRecord"]
