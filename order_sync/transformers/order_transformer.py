"""
Transform raw remote order payloads into validated CustomerOrderCreate models
"""

from typing import Dict, Any, Optional, List, NamedTuple
from datetime import datetime, timezone
from pydantic import ValidationError
from schemas.customer_order import CustomerOrderCreate
from core.exceptions import SanitizationError
import logging

logger = logging.getLogger(__name__)


TEXT_FIELDS = (
    "order_type", "status",
    "customer_id", "customer_name", "customer_first_name", "customer_last_name",
    "customer_email", "customer_phone_primary", "customer_source",
    "building_model_name", "building_size", "building_length", "building_width",
    "building_condition", "building_roof_type", "building_roof_color",
    "building_siding_type", "building_siding_color", "serial_number",
    "company_id", "dealer_id", "dealer_primary_sales_rep", "sold_by_dealer",
    "sold_by_dealer_id", "sold_by_dealer_user", "shop_name", "driver_name",
    "delivery_address_line_one", "delivery_address_line_two", "delivery_city",
    "delivery_state", "delivery_zip",
    "billing_address_line_one", "billing_address_line_two", "billing_city",
    "billing_state", "billing_zip",
    "initial_payment_type", "sub_total_adjustment_note", "promocode_code",
    "rto_company_name", "rto_months_of_term", "invoice_url",
)

MONEY_FIELDS = (
    "balance_dollar_amount", "initial_payment_dollar_amount",
    "sub_total_dollar_amount", "sub_total_adjustment_dollar_amount",
    "total_tax_dollar_amount", "total_amount_dollar_amount",
    "state_tax_rate", "state_tax_dollar_amount", "promocode_amount_discounted",
)

BOOLEAN_FIELDS = ("rto",)

DATE_FIELDS = (
    "date_ordered", "date_delivered", "date_cancelled",
    "date_finished", "date_processed", "date_scheduled_for_delivery",
)

# Source keys that don't follow the plain camelCase convention
SOURCE_KEY_OVERRIDES = {
    "invoice_url": "invoiceURL",
}

TRUE_VALUES = {"true", "1", "yes", "y"}
FALSE_VALUES = {"false", "0", "no", "n"}


def to_camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.capitalize() for part in tail)


class TransformResult(NamedTuple):
    orders: List[CustomerOrderCreate]
    rejected: List[Dict[str, Any]]


class OrderTransformer:
    """
    Sanitize customer order records from the remote API.

    Handles:
    - camelCase to snake_case mapping (snake_case keys accepted as fallback)
    - Text trimming, money rounding, boolean coercion
    - ISO-8601 date parsing (malformed dates reject the record)
    - Add-on lists flattened into summary strings
    """

    def _get(self, record: Dict[str, Any], field_name: str) -> Any:
        source_key = SOURCE_KEY_OVERRIDES.get(field_name, to_camel(field_name))
        if source_key in record:
            return record[source_key]
        return record.get(field_name)

    @staticmethod
    def _clean_text(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @staticmethod
    def _parse_money(value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return round(float(value), 2)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_bool(value: Any) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        return None

    @staticmethod
    def _parse_datetime(field_name: str, value: Any) -> Optional[datetime]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            parsed = value
        else:
            try:
                parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
            except ValueError as e:
                raise SanitizationError(
                    f"Invalid date format for {field_name}: {value!r}",
                    field_name=field_name,
                    field_value=value
                ) from e

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _summarize_addons(addons: Any) -> Optional[str]:
        if not isinstance(addons, list) or not addons:
            return None
        parts = []
        for addon in addons:
            if isinstance(addon, dict):
                parts.append(f"{addon.get('name')}: ${addon.get('price')}")
            else:
                parts.append(str(addon))
        return "; ".join(parts)

    def transform(self, record: Dict[str, Any]) -> CustomerOrderCreate:
        """
        Transform one raw record.

        Raises:
            SanitizationError: record is missing keys or has malformed fields
        """
        if not isinstance(record, dict):
            raise SanitizationError(f"Invalid data: expected object, got {type(record).__name__}")

        record_id = self._clean_text(record.get("id"))
        order_number = self._clean_text(self._get(record, "order_number"))
        if record_id is None:
            raise SanitizationError("Required field missing: id", field_name="id")
        if order_number is None:
            raise SanitizationError(
                "Required field missing: order_number",
                field_name="order_number",
                context={"record_id": record_id}
            )

        values: Dict[str, Any] = {"id": record_id, "order_number": order_number}

        for field_name in TEXT_FIELDS:
            values[field_name] = self._clean_text(self._get(record, field_name))
        for field_name in MONEY_FIELDS:
            values[field_name] = self._parse_money(self._get(record, field_name))
        for field_name in BOOLEAN_FIELDS:
            values[field_name] = self._parse_bool(self._get(record, field_name))

        dates = []
        for field_name in DATE_FIELDS:
            parsed = self._parse_datetime(field_name, self._get(record, field_name))
            values[field_name] = parsed
            if parsed is not None:
                dates.append(parsed)

        # Add-ons
        addons = self._get(record, "building_addons")
        custom_addons = self._get(record, "building_custom_addons")
        values["building_addons"] = self._summarize_addons(addons)
        values["building_custom_addons"] = self._summarize_addons(custom_addons)
        details = []
        for group in (addons, custom_addons):
            if isinstance(group, list):
                details.extend(addon for addon in group if isinstance(addon, dict))
        values["building_addons_details"] = details or None

        now = datetime.now(timezone.utc)
        values["timestamp"] = max(dates) if dates else now
        values["sync_timestamp"] = now

        try:
            return CustomerOrderCreate(**values)
        except ValidationError as e:
            raise SanitizationError(
                f"Validation failed for order {record_id}: {e.errors()[0].get('msg')}",
                context={"record_id": record_id}
            ) from e

    def transform_batch(self, records: List[Dict[str, Any]]) -> TransformResult:
        """Transform many records; rejected records never stop the batch."""
        orders = []
        rejected = []

        for index, record in enumerate(records):
            try:
                orders.append(self.transform(record))
            except SanitizationError as e:
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning(f"Rejected record {record_id} at index {index}: {e.message}")
                rejected.append({
                    "index": index,
                    "record_id": record_id,
                    "error": e.message,
                })

        if rejected:
            logger.info(f"Transformed {len(orders)} records, rejected {len(rejected)}")
        return TransformResult(orders=orders, rejected=rejected)
