"""
Pydantic schema for a sanitized customer order ready to be upserted
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class CustomerOrderCreate(BaseModel):
    """
    Schema for upserting customer orders.

    Ensures:
    - The unique identifier and the order number are present
    - Dates are timezone-aware timestamps
    - Money values are numbers
    """

    # Keys (required)
    id: str = Field(..., min_length=1, max_length=255)
    order_number: str = Field(..., min_length=1, max_length=255)
    order_type: Optional[str] = None
    status: Optional[str] = None

    # Customer
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone_primary: Optional[str] = None
    customer_source: Optional[str] = None

    # Building
    building_model_name: Optional[str] = None
    building_size: Optional[str] = None
    building_length: Optional[str] = None
    building_width: Optional[str] = None
    building_condition: Optional[str] = None
    building_roof_type: Optional[str] = None
    building_roof_color: Optional[str] = None
    building_siding_type: Optional[str] = None
    building_siding_color: Optional[str] = None
    building_addons: Optional[str] = None
    building_custom_addons: Optional[str] = None
    building_addons_details: Optional[List[Dict[str, Any]]] = None
    serial_number: Optional[str] = None

    # Dealer / company
    company_id: Optional[str] = None
    dealer_id: Optional[str] = None
    dealer_primary_sales_rep: Optional[str] = None
    sold_by_dealer: Optional[str] = None
    sold_by_dealer_id: Optional[str] = None
    sold_by_dealer_user: Optional[str] = None
    shop_name: Optional[str] = None
    driver_name: Optional[str] = None

    # Addresses
    delivery_address_line_one: Optional[str] = None
    delivery_address_line_two: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_state: Optional[str] = None
    delivery_zip: Optional[str] = None
    billing_address_line_one: Optional[str] = None
    billing_address_line_two: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_zip: Optional[str] = None

    # Money
    balance_dollar_amount: Optional[float] = None
    initial_payment_dollar_amount: Optional[float] = None
    initial_payment_type: Optional[str] = None
    sub_total_dollar_amount: Optional[float] = None
    sub_total_adjustment_dollar_amount: Optional[float] = None
    sub_total_adjustment_note: Optional[str] = None
    total_tax_dollar_amount: Optional[float] = None
    total_amount_dollar_amount: Optional[float] = None
    state_tax_rate: Optional[float] = None
    state_tax_dollar_amount: Optional[float] = None
    promocode_code: Optional[str] = None
    promocode_amount_discounted: Optional[float] = None

    # Rent-to-own
    rto: Optional[bool] = None
    rto_company_name: Optional[str] = None
    rto_months_of_term: Optional[str] = None

    invoice_url: Optional[str] = Field(None, max_length=2048)

    # Dates
    date_ordered: Optional[datetime] = None
    date_processed: Optional[datetime] = None
    date_scheduled_for_delivery: Optional[datetime] = None
    date_delivered: Optional[datetime] = None
    date_finished: Optional[datetime] = None
    date_cancelled: Optional[datetime] = None
    timestamp: Optional[datetime] = None

    sync_timestamp: datetime

    model_config = ConfigDict(extra="forbid")

    @field_validator("id", "order_number")
    @classmethod
    def strip_keys(cls, v):
        """Keys must be non-empty after trimming"""
        v = v.strip()
        if not v:
            raise ValueError("key cannot be empty after stripping")
        return v
