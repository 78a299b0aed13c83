from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional


class CamelModel(BaseModel):
    """Base schema rendering field names in camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProductResponse(CamelModel):
    """Schema for product response including all fields."""
    id: str
    name: str
    price: float
    description: str = ""
    category: str = "uncategorized"
    stock: int = 0
    created_at: datetime
    updated_at: datetime
    
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class Pagination(CamelModel):
    """Pagination block of a product listing."""
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


class ProductListResponse(CamelModel):
    """Schema for paginated product list response."""
    products: list[ProductResponse]
    pagination: Pagination


class ProductSearchResponse(CamelModel):
    products: list[ProductResponse]
    count: int


class StatsOverview(CamelModel):
    total_products: int = 0
    avg_price: float = 0
    min_price: float = 0
    max_price: float = 0
    total_stock: int = 0


class CategoryStats(CamelModel):
    category: Optional[str]
    count: int
    avg_price: float


class ProductStatsResponse(CamelModel):
    """Aggregates over the whole collection."""
    overview: StatsOverview
    by_category: list[CategoryStats]


class ProductDeleteResponse(CamelModel):
    message: str
    product: ProductResponse


class BulkDeleteResponse(CamelModel):
    message: str
    deleted_count: int
    requested_count: int
    valid_ids_count: int
