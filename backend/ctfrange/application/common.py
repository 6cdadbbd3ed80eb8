"""
Shared helpers for application services
"""

import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from ctfrange.core.exceptions import CodeGenerationExhausted


def random_numeric_code(digits: int) -> str:
    """Random code of exactly ``digits`` digits with no leading zero."""
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


async def unique_numeric_code(
    session: AsyncSession,
    column: InstrumentedAttribute,
    digits: int,
    attempts: int,
) -> str:
    """
    Sample codes until one is unused in ``column``.

    Raises:
        CodeGenerationExhausted: every attempt collided
    """
    for _ in range(max(1, attempts)):
        code = random_numeric_code(digits)
        existing = await session.scalar(select(column).where(column == code).limit(1))
        if existing is None:
            return code

    raise CodeGenerationExhausted(
        f"Could not generate a unique {digits}-digit code after {attempts} attempts",
        column=column.key,
        attempts=attempts,
    )
