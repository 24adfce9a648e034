"""
API 调用审计日志（api_calls 表）。payload 截断后入库，失败只记日志。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from vitachat.db.engine import get_engine
from vitachat.db.models import ApiCall
from vitachat.log import get_logger

logger = get_logger(__name__)

MAX_PAYLOAD_CHARS = 10000


def _truncate(payload: Optional[str]) -> Optional[str]:
    if payload is None:
        return None
    if len(payload) <= MAX_PAYLOAD_CHARS:
        return payload
    return payload[:MAX_PAYLOAD_CHARS] + "...[truncated]"


class ApiCallStore:

    def record(
        self,
        *,
        endpoint: str,
        method: str,
        status_code: int,
        duration_ms: int,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        request_payload: Optional[str] = None,
        response_payload: Optional[str] = None,
        request_size: Optional[int] = None,
        response_size: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> Optional[int]:
        row = ApiCall(
            endpoint=endpoint,
            method=method,
            user_agent=user_agent,
            ip_address=ip_address,
            request_payload=_truncate(request_payload),
            response_payload=_truncate(response_payload),
            request_size=request_size,
            response_size=response_size,
            duration_ms=duration_ms,
            status_code=status_code,
            success=status_code < 400,
            error_message=error_message,
        )
        try:
            with Session(get_engine()) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return row.id
        except Exception as e:
            logger.warning("[api_calls] failed to record %s %s: %s", method, endpoint, e)
            return None

    def recent(self, limit: int = 50, endpoint: Optional[str] = None) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        with Session(get_engine()) as session:
            stmt = select(ApiCall)
            if endpoint:
                stmt = stmt.where(ApiCall.endpoint == endpoint)
            rows = session.exec(stmt.order_by(ApiCall.id.desc()).limit(limit)).all()
        return [r.to_dict() for r in rows]


api_call_store = ApiCallStore()
