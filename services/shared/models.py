"""
Shared — サービス間で共有する値オブジェクト
"""

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class LineItem(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


def parse_line_items(items) -> list[LineItem]:
    """注文明細のリストを検証する。空リストや不正な明細は ValidationError。"""
    if not isinstance(items, list) or not items:
        raise ValidationError("Items array is required and cannot be empty")
    try:
        return [
            item if isinstance(item, LineItem) else LineItem.model_validate(item)
            for item in items
        ]
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise ValidationError("Invalid order item", {"errors": errors}) from e
