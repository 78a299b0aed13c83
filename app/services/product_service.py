from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Optional, List, Tuple
import logging
import math

from sqlalchemy import desc, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import (
    InsufficientStockError,
    InternalServiceError,
    InvalidInputError,
    ProductNotFoundError,
)
from app.models.product import Product
from app.utils.cache import CacheService, cache_service
from app.utils.validators import (
    FIELD_VALIDATORS,
    is_number,
    is_valid_id,
    require_valid_id,
    sanitize_string,
    validate_category,
    validate_description,
    validate_name,
    validate_operation,
    validate_price,
    validate_quantity,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
MAX_PAGE = 1_000_000
SEARCH_LIMIT = 50

SORT_FIELDS = {
    "createdAt": Product.created_at,
    "updatedAt": Product.updated_at,
    "name": Product.name,
    "price": Product.price,
    "stock": Product.stock,
    "category": Product.category,
}
DEFAULT_SORT_FIELD = "createdAt"


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_float(value: Optional[str]) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class ListParams:
    """Normalized listing parameters."""
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: str = DEFAULT_SORT_FIELD
    ascending: bool = False
    category: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    in_stock: bool = False

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    @classmethod
    def from_query(
        cls,
        page: Optional[str] = None,
        limit: Optional[str] = None,
        sort_by: Optional[str] = None,
        order: Optional[str] = None,
        category: Optional[str] = None,
        min_price: Optional[str] = None,
        max_price: Optional[str] = None,
        in_stock: Optional[str] = None,
    ) -> "ListParams":
        """
        Build parameters from raw query-string values.

        Unparsable or zero page/limit fall back to the defaults, out-of-range
        values are clamped, and an unparsable price bound is ignored.
        """
        return cls(
            page=min(MAX_PAGE, max(1, _parse_int(page) or 1)),
            limit=min(MAX_PAGE_SIZE, max(1, _parse_int(limit) or DEFAULT_PAGE_SIZE)),
            sort_by=sort_by if sort_by in SORT_FIELDS else DEFAULT_SORT_FIELD,
            ascending=order == "asc",
            category=category or None,
            min_price=_parse_float(min_price) if min_price else None,
            max_price=_parse_float(max_price) if max_price else None,
            in_stock=in_stock == "true",
        )

    def filters(self) -> list:
        """SQL filter clauses; no parameter means no constraint."""
        clauses = []
        if self.category is not None:
            clauses.append(Product.category == self.category)
        if self.min_price is not None:
            clauses.append(Product.price >= self.min_price)
        if self.max_price is not None:
            clauses.append(Product.price <= self.max_price)
        if self.in_stock:
            clauses.append(Product.stock > 0)
        return clauses

    def ordering(self) -> list:
        column = SORT_FIELDS[self.sort_by]
        direction = column.asc() if self.ascending else column.desc()
        # id breaks ties so page boundaries are stable
        tiebreak = Product.id.asc() if self.ascending else Product.id.desc()
        return [direction, tiebreak]


class ProductService:
    """
    Service class for Product operations.
    
    This service handles:
    - Validating and sanitizing client input
    - Listing, searching and aggregating products
    - Full and partial updates
    - Guarded stock mutations
    - Single and bulk deletion
    - Cache invalidation
    
    STOCK GUARD:
    ============
    A decrement is a single conditional UPDATE:
    
        UPDATE products SET stock = stock - :q WHERE id = :id AND stock >= :q
    
    The database evaluates the guard and applies the write atomically, so two
    concurrent decrements can never both pass the check. When the UPDATE
    matches no row, a follow-up lookup tells a missing product (404) apart
    from insufficient stock (400).
    
    Updates return the written row through RETURNING in the same statement,
    so a response never reflects a later write by another request.
    """
    
    CACHE_PREFIX = "product"
    
    def __init__(self, db: Session, cache: CacheService = None):
        self.db = db
        self.cache = cache or cache_service
    
    @contextmanager
    def _store_operation(self, message: str):
        """Roll back and report store failures without leaking details."""
        try:
            yield
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(message)
            raise InternalServiceError(message)
    
    def create(self, payload: Any) -> Product:
        """
        Create a new product.
        
        Args:
            payload: Decoded JSON request body
            
        Returns:
            Created product instance
            
        Raises:
            InvalidInputError: If name or price is missing or invalid
        """
        payload = payload if isinstance(payload, dict) else {}
        
        data = {
            "name": validate_name(payload.get("name")),
            "price": validate_price(payload.get("price")),
        }
        
        # Optional fields are applied only when usable
        description = payload.get("description")
        if isinstance(description, str) and description:
            data["description"] = validate_description(description)
        category = payload.get("category")
        if isinstance(category, str) and category:
            data["category"] = validate_category(category) or "uncategorized"
        stock = payload.get("stock")
        if is_number(stock) and stock >= 0:
            data["stock"] = math.floor(stock)
        
        with self._store_operation("Failed to create product"):
            product = Product(**data)
            self.db.add(product)
            self.db.commit()
            self.db.refresh(product)
        
        logger.info(f"Product created: {product.id}")
        return product
    
    def get_all(self, params: ListParams) -> Tuple[List[Product], dict]:
        """
        Get a filtered, sorted page of products.
        
        The count and the page fetch share the same filter but run as two
        independent queries.
        
        Returns:
            Tuple of (products list, pagination dict)
        """
        with self._store_operation("Failed to fetch products"):
            query = self.db.query(Product).filter(*params.filters())
            
            total = query.count()
            products = (
                query.order_by(*params.ordering())
                .offset(params.skip)
                .limit(params.limit)
                .all()
            )
        
        pagination = {
            "page": params.page,
            "limit": params.limit,
            "total": total,
            "pages": math.ceil(total / params.limit),
            "has_next": params.page * params.limit < total,
            "has_prev": params.page > 1,
        }
        return products, pagination
    
    def search(self, q: Any) -> List[Product]:
        """
        Case-insensitive substring search over name, description and category.
        
        Raises:
            InvalidInputError: If the query is missing or blank
        """
        term = sanitize_string(q) if isinstance(q, str) else ""
        if not term:
            raise InvalidInputError("Search query is required", error="Invalid query")
        
        pattern = f"%{_escape_like(term)}%"
        with self._store_operation("Failed to search products"):
            return (
                self.db.query(Product)
                .filter(
                    Product.name.ilike(pattern, escape="\\")
                    | Product.description.ilike(pattern, escape="\\")
                    | Product.category.ilike(pattern, escape="\\")
                )
                .order_by(Product.created_at.desc(), Product.id.desc())
                .limit(SEARCH_LIMIT)
                .all()
            )
    
    def get_stats(self) -> dict:
        """Collection-wide overview plus per-category breakdown."""
        count = func.count(Product.id)
        with self._store_operation("Failed to get statistics"):
            total, avg_price, min_price, max_price, total_stock = self.db.query(
                count,
                func.avg(Product.price),
                func.min(Product.price),
                func.max(Product.price),
                func.sum(Product.stock),
            ).one()
            
            categories = (
                self.db.query(
                    Product.category,
                    count.label("count"),
                    func.avg(Product.price).label("avg_price"),
                )
                .group_by(Product.category)
                .order_by(desc("count"), Product.category)
                .all()
            )
        
        overview = {
            "total_products": total or 0,
            "avg_price": float(avg_price or 0),
            "min_price": float(min_price or 0),
            "max_price": float(max_price or 0),
            "total_stock": int(total_stock or 0),
        }
        by_category = [
            {"category": category, "count": category_count, "avg_price": float(avg or 0)}
            for category, category_count, avg in categories
        ]
        return {"overview": overview, "by_category": by_category}
    
    def get_by_id(self, product_id: str) -> dict:
        """
        Get product details from cache or database.
        
        Raises:
            InvalidInputError: If the id is malformed
            ProductNotFoundError: If no product has this id
        """
        require_valid_id(product_id)
        
        cached = self.cache.get(self.CACHE_PREFIX, product_id)
        if cached:
            return cached
        
        with self._store_operation("Failed to fetch product"):
            product = self.db.get(Product, product_id)
        
        if not product:
            raise ProductNotFoundError()
        
        product_dict = product.to_dict()
        self.cache.set(self.CACHE_PREFIX, product_id, product_dict)
        return product_dict
    
    def replace(self, product_id: str, payload: Any) -> Product:
        """
        Full update (PUT): every supplied field must be valid.
        
        Unknown fields are ignored; a non-string description or category is
        stored as an empty string.
        """
        require_valid_id(product_id)
        payload = payload if isinstance(payload, dict) else {}
        
        values = {}
        for field, validator in FIELD_VALIDATORS.items():
            if field not in payload:
                continue
            value = payload[field]
            if field in ("description", "category") and not isinstance(value, str):
                values[field] = ""
            else:
                values[field] = validator(value)
        
        return self._apply_update(product_id, values, "Product updated")
    
    def patch(self, product_id: str, payload: Any) -> Product:
        """
        Partial update (PATCH): invalid fields are dropped, not rejected.
        
        Only fails when no allowed field survives validation.
        """
        require_valid_id(product_id)
        payload = payload if isinstance(payload, dict) else {}
        
        values = {}
        for field, validator in FIELD_VALIDATORS.items():
            if field not in payload:
                continue
            try:
                values[field] = validator(payload[field])
            except InvalidInputError as e:
                logger.debug(f"Dropping field '{field}' from patch of {product_id}: {e.message}")
        
        return self._apply_update(product_id, values, "Product patched")
    
    def _execute_returning(self, statement) -> Optional[Product]:
        """
        Run an UPDATE and commit, returning the row as this statement wrote it.

        The row comes back through RETURNING and is detached before the
        commit, so later writes by other sessions cannot leak into it.
        Returns None when the WHERE clause matched nothing.
        """
        product = self.db.execute(
            statement.returning(Product).execution_options(
                synchronize_session=False, populate_existing=True
            )
        ).scalar_one_or_none()
        if product is not None:
            self.db.expunge(product)
        self.db.commit()
        return product

    def _apply_update(self, product_id: str, values: dict, event: str) -> Product:
        if not values:
            raise InvalidInputError("No valid fields to update", error="No data")
        
        statement = (
            update(Product).where(Product.id == product_id).values(**values)
        )
        with self._store_operation("Failed to update product"):
            product = self._execute_returning(statement)
            if product is None:
                raise ProductNotFoundError()

        self._invalidate_cache(product_id)
        logger.info(f"{event}: {product_id}")
        return product
    
    def update_stock(self, product_id: str, payload: Any) -> Product:
        """
        Increment, decrement or set the stock of a product.
        
        Args:
            product_id: ID of the product
            payload: ``{"quantity": <positive int>, "operation": ...}``
            
        Raises:
            InvalidInputError: If id, quantity or operation is invalid
            ProductNotFoundError: If the product doesn't exist
            InsufficientStockError: If a decrement exceeds the current stock
        """
        require_valid_id(product_id)
        payload = payload if isinstance(payload, dict) else {}
        quantity = validate_quantity(payload.get("quantity"))
        operation = validate_operation(payload.get("operation"))
        
        statement = update(Product).where(Product.id == product_id)
        if operation == "decrement":
            # Guard and write are one statement
            statement = statement.where(Product.stock >= quantity).values(
                stock=Product.stock - quantity
            )
        elif operation == "set":
            statement = statement.values(stock=quantity)
        else:
            statement = statement.values(stock=Product.stock + quantity)
        
        with self._store_operation("Failed to update stock"):
            product = self._execute_returning(statement)

            if product is None:
                # Failure path only: tell a missing product from a failed guard
                exists = (
                    self.db.query(Product.id).filter(Product.id == product_id).first()
                )
                if not exists:
                    raise ProductNotFoundError()
                raise InsufficientStockError()

        self._invalidate_cache(product_id)
        logger.info(f"Stock updated: {product_id} {operation} {quantity}")
        return product
    
    def delete(self, product_id: str) -> dict:
        """
        Delete a product.
        
        Returns:
            The deleted product as a dictionary
        """
        require_valid_id(product_id)
        
        with self._store_operation("Failed to delete product"):
            product = self.db.get(Product, product_id)
            if not product:
                raise ProductNotFoundError()
            
            deleted = product.to_dict()
            self.db.delete(product)
            self.db.commit()
        
        self._invalidate_cache(product_id)
        logger.info(f"Product deleted: {product_id}")
        return deleted
    
    def bulk_delete(self, payload: Any) -> dict:
        """
        Delete every product whose id is listed and well-formed.
        
        Returns:
            Dict with deleted, requested and valid id counts
        """
        ids = payload.get("ids") if isinstance(payload, dict) else None
        if not isinstance(ids, list) or not ids:
            raise InvalidInputError("IDs array is required", error="Invalid request")
        
        valid_ids = [product_id for product_id in ids if is_valid_id(product_id)]
        if not valid_ids:
            raise InvalidInputError("No valid product IDs provided", error="Invalid IDs")
        
        with self._store_operation("Failed to delete products"):
            deleted_count = (
                self.db.query(Product)
                .filter(Product.id.in_(valid_ids))
                .delete(synchronize_session=False)
            )
            self.db.commit()
        
        self.cache.delete_many(self.CACHE_PREFIX, valid_ids)
        logger.info(f"Bulk delete: {deleted_count} products")
        return {
            "deleted_count": deleted_count,
            "requested_count": len(ids),
            "valid_ids_count": len(valid_ids),
        }
    
    def _invalidate_cache(self, product_id: str) -> None:
        """Invalidate cache for a product."""
        self.cache.delete(self.CACHE_PREFIX, product_id)
