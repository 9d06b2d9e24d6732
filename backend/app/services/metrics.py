"""
API metrics tracking.
"""

from typing import Optional

from app.config import logger
from app.utils.ids import utc_now_iso


async def log_api_metric(db, endpoint: str, method: str, response_time_ms: int,
                         status_code: int, error_type: Optional[str],
                         user_id: Optional[str], ip_address: Optional[str]):
    """Log API metrics to database"""
    try:
        await db.api_metrics.insert_one({
            "endpoint": endpoint,
            "method": method,
            "response_time_ms": response_time_ms,
            "status_code": status_code,
            "error_type": error_type,
            "user_id": user_id,
            "ip_address": ip_address,
            "timestamp": utc_now_iso()
        })
    except Exception as e:
        logger.error(f"Failed to log API metric: {e}")
