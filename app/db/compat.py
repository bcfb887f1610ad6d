"""
עזרי SQL תואמי דיאלקט — PostgreSQL בפרודקשן, SQLite בבדיקות.

- utcnow(): שעון UTC נאיבי — כל עמודות ה-DateTime נשמרות כ-UTC ללא tz,
  כך שהשוואות זהות בשני הדיאלקטים.
- dialect_insert(): insert עם ON CONFLICT (upsert) לפי הדיאלקט של ה-session.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def utcnow() -> datetime:
    """UTC נוכחי ללא tzinfo (תואם עמודות DateTime נאיביות)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def dialect_insert(db: AsyncSession, table):
    """insert() של הדיאלקט הפעיל — תומך ב-on_conflict_do_update/do_nothing."""
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return pg_insert(table)
    if dialect_name == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"ON CONFLICT לא נתמך בדיאלקט {dialect_name}")


def enum_values(enum_cls) -> list[str]:
    """values_callable ל-SQLEnum — שומר את הערך ("paid") ולא את השם ("PAID")."""
    return [member.value for member in enum_cls]
