import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session

from otabridge.codecs.base import DecodeError
from otabridge.codecs.hengdian import build_result_xml, parse_room_status
from otabridge.db import get_session
from otabridge.models import SoftwareProvider
from otabridge.services.identification import IdentificationResolver
from otabridge.worker import JobQueue, hengdian_inventory_job, resource_order_event_job


logger = logging.getLogger(__name__)

router = APIRouter()

XML_MEDIA_TYPE = "application/xml"


class ResourceOrderEventIn(BaseModel):
    """리소스 제공자 주문 콜백. 제공자별 필드는 그대로 통과시킵니다."""

    model_config = ConfigDict(extra="allow")

    method: str | None = None
    orderSourceId: str | int | None = None
    orderId: str | int | None = None
    orderNo: str | int | None = None


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.jobs


def _xml(result_code: str, message: str) -> Response:
    return Response(content=build_result_xml(result_code, message), media_type=XML_MEDIA_TYPE)


def _reject(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"state": 0, "msg": message})


@router.post("/resource/hengdian/inventory")
async def receive_hengdian_inventory(request: Request, jobs: JobQueue = Depends(get_job_queue)) -> Response:
    body = await request.body()
    try:
        entries = parse_room_status(body)
    except DecodeError as e:
        logger.warning(f"[WEBHOOK] Hengdian 방 상태 파싱 실패: {e}")
        return _xml("-1", f"XML格式错误：{e}")

    if not entries:
        return _xml("-1", "RoomQuotaMap为空")
    if not jobs.submit("hengdian:inventory", hengdian_inventory_job, entries):
        return _xml("-1", "系统繁忙，请稍后重试")

    logger.info(f"[WEBHOOK] Hengdian 방 상태 수신: hotels={len(entries)}")
    return _xml("0", "已接收")


def _receive_order_event(
    provider_code: str,
    event: ResourceOrderEventIn,
    session: Session,
    jobs: JobQueue,
    scenic_spot_code: str | None = None,
) -> JSONResponse:
    provider = session.scalars(select(SoftwareProvider).where(SoftwareProvider.code == provider_code)).first()
    if provider is None:
        logger.warning(f"[WEBHOOK] 알 수 없는 리소스 제공자: {provider_code}")
        return _reject(f"未知的资源方：{provider_code}", status_code=404)

    payload: dict[str, Any] = event.model_dump(exclude_none=True)
    lookup = dict(payload)
    # 콜백의 주문 참조를 식별용 주문번호로 사용
    lookup.setdefault("orderNo", payload.get("orderSourceId") or payload.get("orderId"))

    identification = IdentificationResolver(session).identify(lookup, provider.id, scenic_spot_code)
    if identification is None:
        logger.warning(f"[WEBHOOK] 식별 실패로 거부: provider={provider_code} method={event.method}")
        return _reject("无法识别景区或资源方配置")

    if not jobs.submit(f"{provider_code}:order:{event.method}", resource_order_event_job, provider_code, payload):
        return _reject("系统繁忙，请稍后重试", status_code=503)

    logger.info(
        f"[WEBHOOK] 주문 콜백 수신: provider={provider_code} method={event.method} "
        f"scenic={identification.scenic_spot.code} by={identification.method}"
    )
    return JSONResponse(content={"state": 1, "msg": "成功"})


@router.post("/resource/{provider_code}/order")
def receive_resource_order_event(
    provider_code: str,
    event: ResourceOrderEventIn,
    session: Session = Depends(get_session),
    jobs: JobQueue = Depends(get_job_queue),
) -> JSONResponse:
    return _receive_order_event(provider_code, event, session, jobs)


@router.post("/resource/{provider_code}/{scenic_spot_code}/order")
def receive_scenic_resource_order_event(
    provider_code: str,
    scenic_spot_code: str,
    event: ResourceOrderEventIn,
    session: Session = Depends(get_session),
    jobs: JobQueue = Depends(get_job_queue),
) -> JSONResponse:
    return _receive_order_event(provider_code, event, session, jobs, scenic_spot_code)
