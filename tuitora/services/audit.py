import logging
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from .. import models

logger = logging.getLogger("tuitora.services.audit")


async def record_audit(
    db: AsyncSession,
    action: str,
    new_data: dict,
    table_name: str = "messages",
    user_id: Optional[str] = None,
) -> bool:
    """
    Append an audit row. Never raises: webhooks must answer the provider
    even when the database is down.
    """
    try:
        db.add(models.AuditLog(
            action=action,
            table_name=table_name,
            user_id=user_id,
            new_data=new_data,
        ))
        await db.commit()
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Failed to write audit log {action}: {e}")
        try:
            await db.rollback()
        except (SQLAlchemyError, OSError) as rollback_error:
            logger.error(f"Rollback after failed audit log {action} also failed: {rollback_error}")
        return False
