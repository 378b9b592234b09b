"""Raw SQL script execution, used by the direct SQL table creation strategy."""
import logging
from typing import List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def split_sql_commands(sql_content: str) -> List[str]:
    """Split a script on semicolons that are outside quotes and ``--`` comments.

    A doubled quote inside a literal (``'it''s'``) stays part of the literal.
    Each returned command keeps its terminating semicolon, empty ones are dropped.
    """
    commands: List[str] = []
    buffer: List[str] = []
    quote = None
    in_comment = False

    for char in sql_content:
        if in_comment:
            if char == "\n":
                in_comment = False
                buffer.append(char)
            continue
        if quote:
            buffer.append(char)
            if char == quote:
                # A doubled quote re-enters the literal on the next char
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "-" and buffer and buffer[-1] == "-":
            buffer.pop()
            in_comment = True
            continue
        buffer.append(char)
        if char == ";":
            command = "".join(buffer).strip()
            if command != ";":
                commands.append(command)
            buffer = []

    tail = "".join(buffer).strip()
    if tail:
        commands.append(tail)
    return commands


async def execute_sql_commands(session: AsyncSession, sql_content: str) -> int:
    """Run every command of the script, committing after each. Returns the count."""
    commands = split_sql_commands(sql_content)
    for command in commands:
        try:
            await session.execute(text(command))
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"SQL command failed: {str(e)}\n{command}")
            raise
    logger.debug(f"Executed {len(commands)} SQL commands")
    return len(commands)
