from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Any, Optional

from app.database import get_db
from app.services.product_service import ListParams, ProductService
from app.schemas.product import (
    BulkDeleteResponse,
    ProductDeleteResponse,
    ProductListResponse,
    ProductResponse,
    ProductSearchResponse,
    ProductStatsResponse,
)

router = APIRouter(prefix="/products", tags=["Products"])


@router.post(
    "",
    response_model=ProductResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new product",
    description="Create a new product with name, price and optional description, category and stock."
)
def create_product(
    payload: Any = Body(None),
    db: Session = Depends(get_db)
):
    """
    Create a new product.
    
    - **name**: Product name (required)
    - **price**: Product price, must be non-negative (required)
    - **description**, **category**: Optional text
    - **stock**: Optional initial stock, floored to an integer when non-negative
    """
    service = ProductService(db)
    return service.create(payload)


@router.get(
    "",
    response_model=ProductListResponse,
    summary="List products",
    description="Get a paginated, filtered and sorted list of products."
)
def list_products(
    page: Optional[str] = Query(None, description="Page number (>= 1)"),
    limit: Optional[str] = Query(None, description="Items per page (1-100)"),
    sort_by: Optional[str] = Query(None, alias="sortBy", description="Sort field"),
    order: Optional[str] = Query(None, description="asc or desc"),
    category: Optional[str] = Query(None, description="Exact category"),
    min_price: Optional[str] = Query(None, alias="minPrice", description="Inclusive lower price bound"),
    max_price: Optional[str] = Query(None, alias="maxPrice", description="Inclusive upper price bound"),
    in_stock: Optional[str] = Query(None, alias="inStock", description="'true' keeps products with stock > 0"),
    db: Session = Depends(get_db)
):
    """Get paginated list of products."""
    params = ListParams.from_query(
        page=page,
        limit=limit,
        sort_by=sort_by,
        order=order,
        category=category,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
    )
    service = ProductService(db)
    products, pagination = service.get_all(params)
    
    return ProductListResponse(
        products=[ProductResponse.model_validate(p) for p in products],
        pagination=pagination
    )


@router.get(
    "/search",
    response_model=ProductSearchResponse,
    summary="Search products",
    description="Case-insensitive search over name, description and category (max 50 results)."
)
def search_products(
    q: Optional[str] = Query(None, description="Search text"),
    db: Session = Depends(get_db)
):
    service = ProductService(db)
    products = service.search(q)
    return ProductSearchResponse(
        products=[ProductResponse.model_validate(p) for p in products],
        count=len(products)
    )


@router.get(
    "/stats",
    response_model=ProductStatsResponse,
    summary="Product statistics",
    description="Overview aggregates and per-category breakdown."
)
def product_stats(db: Session = Depends(get_db)):
    service = ProductService(db)
    return service.get_stats()


@router.post(
    "/bulk-delete",
    response_model=BulkDeleteResponse,
    summary="Delete many products",
    description="Delete every product whose id is listed. Malformed ids are skipped."
)
def bulk_delete_products(
    payload: Any = Body(None),
    db: Session = Depends(get_db)
):
    service = ProductService(db)
    result = service.bulk_delete(payload)
    return BulkDeleteResponse(message="Products deleted successfully", **result)


@router.get(
    "/{product_id}",
    response_model=ProductResponse,
    summary="Get product by ID",
    description="Get detailed information about a specific product. Results are cached in Redis."
)
def get_product(
    product_id: str,
    db: Session = Depends(get_db)
):
    """
    Get a product by ID.
    
    This endpoint uses Redis caching for improved performance.
    Cache TTL is 5 minutes by default.
    """
    service = ProductService(db)
    return service.get_by_id(product_id)


@router.put(
    "/{product_id}",
    response_model=ProductResponse,
    summary="Replace product fields",
    description="Update the supplied fields. Any invalid field rejects the whole request."
)
def update_product(
    product_id: str,
    payload: Any = Body(None),
    db: Session = Depends(get_db)
):
    service = ProductService(db)
    return service.replace(product_id, payload)


@router.patch(
    "/{product_id}",
    response_model=ProductResponse,
    summary="Partially update a product",
    description="Apply the valid fields among name, price, description, category and stock; invalid ones are skipped."
)
def patch_product(
    product_id: str,
    payload: Any = Body(None),
    db: Session = Depends(get_db)
):
    service = ProductService(db)
    return service.patch(product_id, payload)


@router.patch(
    "/{product_id}/stock",
    response_model=ProductResponse,
    summary="Update stock",
    description="Increment, decrement or set stock. Decrements never drive stock below zero."
)
def update_stock(
    product_id: str,
    payload: Any = Body(None),
    db: Session = Depends(get_db)
):
    """
    Change the stock of a product.
    
    - **quantity**: Positive whole number (required)
    - **operation**: `increment` (default), `decrement` or `set`
    
    A decrement larger than the available stock fails with 400 and leaves the
    stock untouched.
    """
    service = ProductService(db)
    return service.update_stock(product_id, payload)


@router.delete(
    "/{product_id}",
    response_model=ProductDeleteResponse,
    summary="Delete a product",
    description="Delete a product by ID and return it. Associated cache is also cleared."
)
def delete_product(
    product_id: str,
    db: Session = Depends(get_db)
):
    """Delete a product."""
    service = ProductService(db)
    deleted = service.delete(product_id)
    return ProductDeleteResponse(message="Product deleted successfully", product=deleted)
