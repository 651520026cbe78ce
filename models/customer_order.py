from sqlalchemy import (
    Column, String, DateTime, Boolean, Numeric, Text, Index, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone
from models.base import Base


def _utcnow():
    return datetime.now(timezone.utc)


Money = Numeric(12, 2, asdecimal=False)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class CustomerOrder(Base):
    """
    Destination table for customer orders pulled from the remote order API.

    Design:
    - ``id`` is the source's stable identifier and the upsert conflict key
    - ``order_number`` is the business key downstream consumers use for
      duplicate detection
    - ``created_at`` is set on first insert only; cleanup uses it as the
      record age
    - ``sync_timestamp`` is refreshed on every upsert
    """
    __tablename__ = "customer_orders"

    id = Column(String(255), primary_key=True)
    order_number = Column(String(255), nullable=False, index=True)
    order_type = Column(String(100), nullable=True)
    status = Column(String(100), nullable=True, index=True)

    # Customer
    customer_id = Column(String(255), nullable=True, index=True)
    customer_name = Column(String(255), nullable=True)
    customer_first_name = Column(String(255), nullable=True)
    customer_last_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone_primary = Column(String(100), nullable=True)
    customer_source = Column(String(255), nullable=True)

    # Building
    building_model_name = Column(String(255), nullable=True)
    building_size = Column(String(100), nullable=True)
    building_length = Column(String(50), nullable=True)
    building_width = Column(String(50), nullable=True)
    building_condition = Column(String(100), nullable=True)
    building_roof_type = Column(String(100), nullable=True)
    building_roof_color = Column(String(100), nullable=True)
    building_siding_type = Column(String(100), nullable=True)
    building_siding_color = Column(String(100), nullable=True)
    building_addons = Column(Text, nullable=True)
    building_custom_addons = Column(Text, nullable=True)
    building_addons_details = Column(JSONDocument, nullable=True)
    serial_number = Column(String(255), nullable=True)

    # Dealer / company
    company_id = Column(String(255), nullable=True)
    dealer_id = Column(String(255), nullable=True)
    dealer_primary_sales_rep = Column(String(255), nullable=True)
    sold_by_dealer = Column(String(255), nullable=True)
    sold_by_dealer_id = Column(String(255), nullable=True)
    sold_by_dealer_user = Column(String(255), nullable=True)
    shop_name = Column(String(255), nullable=True)
    driver_name = Column(String(255), nullable=True)

    # Delivery address
    delivery_address_line_one = Column(String(255), nullable=True)
    delivery_address_line_two = Column(String(255), nullable=True)
    delivery_city = Column(String(100), nullable=True)
    delivery_state = Column(String(50), nullable=True)
    delivery_zip = Column(String(20), nullable=True)

    # Billing address
    billing_address_line_one = Column(String(255), nullable=True)
    billing_address_line_two = Column(String(255), nullable=True)
    billing_city = Column(String(100), nullable=True)
    billing_state = Column(String(50), nullable=True)
    billing_zip = Column(String(20), nullable=True)

    # Money
    balance_dollar_amount = Column(Money, nullable=True)
    initial_payment_dollar_amount = Column(Money, nullable=True)
    initial_payment_type = Column(String(100), nullable=True)
    sub_total_dollar_amount = Column(Money, nullable=True)
    sub_total_adjustment_dollar_amount = Column(Money, nullable=True)
    sub_total_adjustment_note = Column(Text, nullable=True)
    total_tax_dollar_amount = Column(Money, nullable=True)
    total_amount_dollar_amount = Column(Money, nullable=True)
    state_tax_rate = Column(Money, nullable=True)
    state_tax_dollar_amount = Column(Money, nullable=True)
    promocode_code = Column(String(100), nullable=True)
    promocode_amount_discounted = Column(Money, nullable=True)

    # Rent-to-own
    rto = Column(Boolean, nullable=True)
    rto_company_name = Column(String(255), nullable=True)
    rto_months_of_term = Column(String(50), nullable=True)

    invoice_url = Column(String(2048), nullable=True)

    # Dates
    date_ordered = Column(DateTime(timezone=True), nullable=True, index=True)
    date_processed = Column(DateTime(timezone=True), nullable=True)
    date_scheduled_for_delivery = Column(DateTime(timezone=True), nullable=True)
    date_delivered = Column(DateTime(timezone=True), nullable=True)
    date_finished = Column(DateTime(timezone=True), nullable=True)
    date_cancelled = Column(DateTime(timezone=True), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=True)  # Most recent order date

    # Sync bookkeeping
    sync_timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_customer_orders_customer_date", "customer_id", "date_ordered"),
    )

    # Columns an upsert must never overwrite
    IMMUTABLE_COLUMNS = frozenset({"id", "created_at"})
