import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, DateTime, CheckConstraint, Index
from sqlalchemy.orm import validates

from app.database import Base


def generate_id() -> str:
    """Generate a new product identifier (canonical UUID string)."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(Base):
    """
    Product model representing items in the catalog.
    
    Attributes:
        id: Store-assigned identifier (canonical UUID string)
        name: Product name
        price: Product price (must be non-negative)
        description: Free-form description
        category: Category name, "uncategorized" when not given
        stock: Available quantity (must be non-negative)
        created_at: Timestamp when product was created
        updated_at: Timestamp when product was last updated
    """
    __tablename__ = "products"
    
    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(200), nullable=False, index=True)
    price = Column(Float, nullable=False, index=True)
    description = Column(String(2000), nullable=False, default="")
    category = Column(String(100), nullable=False, default="uncategorized", index=True)
    stock = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    
    # Database-level constraints to ensure data integrity
    __table_args__ = (
        CheckConstraint('price >= 0', name='check_price_non_negative'),
        CheckConstraint('stock >= 0', name='check_stock_non_negative'),
        Index('ix_products_category_price', 'category', 'price'),
    )
    
    @validates("stock")
    def _coerce_stock(self, key, value):
        # Runs whenever the attribute is assigned on the instance (e.g. at
        # construction), not when rows are loaded or written by UPDATE.
        if value is not None and value < 0:
            return 0
        return value
    
    def to_dict(self) -> dict:
        """Plain, JSON-friendly representation (used for caching)."""
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "description": self.description,
            "category": self.category,
            "stock": self.stock,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
    
    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', stock={self.stock})>"
