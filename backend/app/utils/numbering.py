"""Shared number generation utility.

Reads format templates from settings and generates sequential codes.

Format tokens:
  {date}       → YYYYMMDD (default)
  {seq:N}      → zero-padded sequence number, N digits, resets daily per prefix
  {batch}      → parent batch number (lot codes only)

Default formats:
  batch:     B-{date}-{seq:3}
  lot:       {batch}-{date}
"""

import re
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.batch import Batch


def _build_prefix(fmt: str, today_str: str, batch_number: str | None = None) -> str:
    """Build the prefix portion of the code (everything before {seq:N}).

    Returns the static prefix so we can count existing codes with this prefix.
    """
    prefix = fmt.replace("{date}", today_str)
    if batch_number is not None:
        prefix = prefix.replace("{batch}", batch_number)
    prefix = re.sub(r"\{seq:\d+\}.*$", "", prefix)
    return prefix


def _render(fmt: str, today_str: str, seq_num: int | None, batch_number: str | None) -> str:
    code = fmt.replace("{date}", today_str)
    if batch_number is not None:
        code = code.replace("{batch}", batch_number)
    if seq_num is not None:
        seq_match = re.search(r"\{seq:(\d+)\}", fmt)
        seq_width = int(seq_match.group(1)) if seq_match else 3
        code = re.sub(r"\{seq:\d+\}", f"{seq_num:0{seq_width}d}", code)
    return code


async def generate_batch_number(db: AsyncSession, on: date | None = None) -> str:
    """Generate the next batch number, e.g. ``B-20260219-001``.

    The sequence is the count of existing batch numbers sharing today's
    prefix, plus one.  Two concurrent creations can race to the same
    number; the unique constraint on ``batch_number`` rejects the loser.
    """
    fmt = settings.batch_number_format
    today_str = (on or date.today()).strftime("%Y%m%d")
    prefix = _build_prefix(fmt, today_str)

    result = await db.execute(
        select(func.count(Batch.id)).where(Batch.batch_number.like(f"{prefix}%"))
    )
    count = result.scalar() or 0

    return _render(fmt, today_str, count + 1, None)


def generate_lot_code(batch_number: str, on: date | None = None) -> str:
    """Default lot code for a harvest receipt, e.g. ``B-20260219-001-20260601``."""
    today_str = (on or date.today()).strftime("%Y%m%d")
    return _render(settings.lot_code_format, today_str, None, batch_number)
