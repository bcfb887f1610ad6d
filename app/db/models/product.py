"""
Product Model - מלאי זמין למכירה
"""
from sqlalchemy import Column, String, Integer, DateTime, CheckConstraint

from app.db.compat import utcnow, new_id
from app.db.database import Base


class Product(Base):
    """מוצר עם מלאי — stock משתנה רק דרך UPDATE מותנה של ה-inventory ledger"""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    stock = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )
