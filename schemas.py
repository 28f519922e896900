from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import AmountOperator, MerchantMatchType

_TEXT_FIELDS = (
    "name",
    "merchant_match",
    "account_id",
    "set_category_slug",
    "set_merchant_name",
    "set_assigned_id",
    "set_deal_code",
)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _clean_tag_ids(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        seen: list[str] = []
        for item in value:
            clean = str(item).strip()
            if clean and clean not in seen:
                seen.append(clean)
        return seen
    return value


class RuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    enabled: bool = True
    priority: int = Field(default=0, ge=0, le=10_000)

    merchant_match: Optional[str] = Field(default=None, max_length=200)
    merchant_match_type: MerchantMatchType = MerchantMatchType.contains
    amount_operator: Optional[AmountOperator] = None
    amount_value_cents: Optional[int] = None
    amount_value_max_cents: Optional[int] = None
    account_id: Optional[str] = None
    date_start: Optional[date] = None
    date_end: Optional[date] = None

    set_category_slug: Optional[str] = Field(default=None, max_length=100)
    set_merchant_name: Optional[str] = Field(default=None, max_length=200)
    set_excluded: Optional[bool] = None
    set_assigned_id: Optional[str] = None
    set_deal_code: Optional[str] = Field(default=None, max_length=64)
    auto_resolve_deal: bool = False
    add_tag_ids: list[str] = Field(default_factory=list)

    @field_validator(*_TEXT_FIELDS, mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("merchant_match_type", mode="before")
    @classmethod
    def _default_match_type(cls, value: Any) -> Any:
        return MerchantMatchType.contains if value is None else value

    @field_validator("add_tag_ids", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: Any) -> Any:
        return _clean_tag_ids(value)

    @model_validator(mode="after")
    def _check_criteria(self) -> "RuleIn":
        if self.amount_operator is not None and self.amount_value_cents is None:
            raise ValueError("amount_value_cents is required with amount_operator")
        if self.amount_operator is None and self.amount_value_cents is not None:
            raise ValueError("amount_operator is required with amount_value_cents")
        if self.amount_operator == AmountOperator.between:
            if self.amount_value_max_cents is None:
                raise ValueError("between requires amount_value_max_cents")
            if abs(self.amount_value_max_cents) < abs(self.amount_value_cents or 0):
                raise ValueError("amount range maximum is below its minimum")
        if (
            self.date_start is not None
            and self.date_end is not None
            and self.date_start > self.date_end
        ):
            raise ValueError("date_start must not be after date_end")
        return self


class RuleUpdate(BaseModel):
    """Partial rule edit. Only fields the caller actually sent are applied."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=120)
    enabled: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0, le=10_000)

    merchant_match: Optional[str] = Field(default=None, max_length=200)
    merchant_match_type: Optional[MerchantMatchType] = None
    amount_operator: Optional[AmountOperator] = None
    amount_value_cents: Optional[int] = None
    amount_value_max_cents: Optional[int] = None
    account_id: Optional[str] = None
    date_start: Optional[date] = None
    date_end: Optional[date] = None

    set_category_slug: Optional[str] = Field(default=None, max_length=100)
    set_merchant_name: Optional[str] = Field(default=None, max_length=200)
    set_excluded: Optional[bool] = None
    set_assigned_id: Optional[str] = None
    set_deal_code: Optional[str] = Field(default=None, max_length=64)
    auto_resolve_deal: Optional[bool] = None
    add_tag_ids: Optional[list[str]] = None

    @field_validator(*_TEXT_FIELDS, mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _blank_to_none(value)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
