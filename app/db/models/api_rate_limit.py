"""
API Rate Limit Model - מונה fixed-window משותף לכל ה-replicas
"""
from sqlalchemy import Column, String, Integer, DateTime

from app.db.compat import utcnow
from app.db.database import Base


class ApiRateLimit(Base):
    """מונה בקשות לפי מפתח (prefix + subject) בחלון זמן קבוע"""

    __tablename__ = "api_rate_limits"

    key = Column(String(200), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    window_started_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
