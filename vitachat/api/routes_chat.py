"""
对话 API：POST /api/chat, 检索结果查询 / 确认, 历史消息, 健康检查
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from vitachat.api.deps import Services, get_current_claims, get_services
from vitachat.api.schemas import ChatRequest, ChatResponse
from vitachat.auth.token import TokenClaims
from vitachat.log import get_logger
from vitachat.research.job_store import JobStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.post("", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(
    body: ChatRequest,
    claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> ChatResponse:
    """处理一轮对话；需要深度检索时立即返回占位回复，research_pending=true。"""
    result = await services.orchestrator.process_turn(
        [m.model_dump() for m in body.messages],
        claims.user_id,
        claims.session_id,
        user_location=body.user_location,
    )
    return ChatResponse(**result.to_dict())


@router.get("/research/{message_id}")
def research_status(
    message_id: str,
    _claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    job = services.job_store.get(message_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Research result not found")
    return {"success": True, "result": job.to_dict(), "timestamp": _now()}


@router.get("/message/{message_id}")
def message_result(
    message_id: str,
    _claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    """取检索结果；completed 的任务在返回后即从内存中删除。"""
    job = services.job_store.get(message_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Message result not found")
    if job.status == JobStatus.COMPLETED:
        services.job_store.acknowledge(message_id)
        return {
            "success": True,
            "response": {
                "research_results": job.research_results,
                "key_developments": job.key_developments,
                "citations": job.citations,
            },
            "status": job.status.value,
            "timestamp": _now(),
        }
    return {"success": True, "status": job.status.value, "error": job.error, "timestamp": _now()}


@router.post("/research/{message_id}/validate")
async def revalidate_citations(
    message_id: str,
    _claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    """重新校验已完成任务的引用 URL。"""
    results = await services.pipeline.validate_existing_citations(message_id)
    if results is None:
        raise HTTPException(status_code=404, detail="Completed research result not found")
    return {"success": True, "citation_validation": results, "timestamp": _now()}


@router.get("/session/{session_id}/history")
async def session_history(
    session_id: str,
    limit: int = Query(50, ge=1, le=500),
    claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    messages = await services.orchestrator.get_session_history(session_id, limit)
    messages = [m for m in messages if m.get("user_id") in (None, claims.user_id)]
    return {"success": True, "messages": messages, "session_id": session_id, "timestamp": _now()}


@router.get("/user/{user_id}/history")
async def user_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    if user_id != claims.user_id:
        raise HTTPException(status_code=403, detail="Cannot read another user's history")
    messages = await services.orchestrator.get_user_history(user_id, limit)
    return {"success": True, "messages": messages, "user_id": user_id, "timestamp": _now()}


@router.get("/health")
def chat_health() -> dict:
    return {"status": "OK", "service": "chat", "timestamp": _now()}
