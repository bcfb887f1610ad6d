"""
Compare-and-swap על שורות — ה-primitive היחיד לשינויים משותפים.

כל מעבר סטטוס, claim של אירוע, claim של sweep ועדכון מלאי הם
UPDATE ... WHERE <תנאי מצב נוכחי> ... RETURNING בודד.
מי שמפסיד במרוץ מקבל 0 שורות (None) — בלי read-modify-write ובלי נעילות
ברמת האפליקציה.

העדכונים רצים מול ה-Table (Core) ולא דרך ה-ORM, ולכן אובייקטים שכבר
נטענו ל-session עלולים להיות ישנים — לקריאה עדכנית להשתמש ב-fetch_fresh().
"""
from typing import Any, Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncSession


async def compare_and_swap(
    db: AsyncSession,
    model,
    where: Sequence[Any],
    values: dict[str, Any],
    returning: Iterable[Any] | None = None,
) -> RowMapping | None:
    """
    UPDATE בודד מותנה. מחזיר את השורה המעודכנת או None אם התנאי לא התקיים.

    Args:
        model: מחלקת ORM (משתמשים ב-__table__ שלה)
        where: תנאי ה-"compare" — חייבים לזהות את השורה ואת המצב הצפוי
        values: ערכי ה-"swap"
        returning: עמודות להחזרה (ברירת מחדל: כל העמודות)
    """
    table = model.__table__
    stmt = (
        update(table)
        .where(*where)
        .values(**values)
        .returning(*(returning if returning is not None else table.c))
    )
    result = await db.execute(stmt)
    return result.mappings().first()


async def compare_and_swap_many(
    db: AsyncSession,
    model,
    where: Sequence[Any],
    values: dict[str, Any],
    returning: Iterable[Any] | None = None,
) -> list[RowMapping]:
    """כמו compare_and_swap, למספר שורות — מחזיר את כל השורות שעודכנו."""
    table = model.__table__
    stmt = (
        update(table)
        .where(*where)
        .values(**values)
        .returning(*(returning if returning is not None else table.c))
    )
    result = await db.execute(stmt)
    return list(result.mappings().all())


async def claim_one(
    db: AsyncSession,
    model,
    eligible: Sequence[Any],
    order_by: Sequence[Any],
    values: dict[str, Any],
) -> RowMapping | None:
    """
    claim של השורה הזכאית הוותיקה ביותר.

    תנאי הזכאות נבדקים פעמיים: בבחירת המועמד ושוב ב-WHERE של ה-UPDATE,
    כך ש-worker שהפסיד במרוץ על אותה שורה מקבל None.
    """
    table = model.__table__
    pk = table.c.id
    candidate = (
        select(pk)
        .where(*eligible)
        .order_by(*order_by)
        .limit(1)
        .scalar_subquery()
    )
    return await compare_and_swap(db, model, [pk == candidate, *eligible], values)


async def claim_batch(
    db: AsyncSession,
    model,
    eligible: Sequence[Any],
    order_by: Sequence[Any],
    limit: int,
    values: dict[str, Any],
) -> list[RowMapping]:
    """claim של עד ``limit`` שורות זכאיות בפקודה אחת."""
    table = model.__table__
    pk = table.c.id
    candidates = (
        select(pk)
        .where(*eligible)
        .order_by(*order_by)
        .limit(limit)
    )
    return await compare_and_swap_many(db, model, [pk.in_(candidates), *eligible], values)


async def fetch_fresh(db: AsyncSession, model, row_id: str):
    """טעינת אובייקט ORM מה-DB, דורס ערכים ישנים ב-identity map."""
    result = await db.execute(
        select(model)
        .where(model.id == row_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
