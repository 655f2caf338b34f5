import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from otabridge.api.webhooks import get_job_queue
from otabridge.codecs.base import CodecError, compact_json, loads_json
from otabridge.ctrip_client import CtripClient
from otabridge.db import get_session
from otabridge.enums import OtaPlatformCode
from otabridge.meituan_client import MeituanClient
from otabridge.models import OtaPlatform
from otabridge.services.ota_order_intake import (
    CANCEL,
    CONFIRM,
    SYNC,
    CtripOrderIntake,
    FollowUp,
    IntakeReply,
    MeituanOrderIntake,
)
from otabridge.worker import JobQueue, cancel_order_job, confirm_order_job, sync_price_stock_job


logger = logging.getLogger(__name__)

router = APIRouter()

FOLLOW_UP_JOBS: dict[str, Callable[..., Any]] = {
    CONFIRM: confirm_order_job,
    CANCEL: cancel_order_job,
    SYNC: sync_price_stock_job,
}

MEITUAN_ORDER_ACTIONS = {
    "create/v2": "create",
    "create": "create",
    "pay": "pay",
    "query": "query",
    "refund": "refund",
    "close": "close",
}
ENCRYPTION_HEADER = "X-Encryption-Status"


def _platform(session: Session, code: OtaPlatformCode) -> OtaPlatform | None:
    return session.scalars(
        select(OtaPlatform).where(OtaPlatform.code == code.value).where(OtaPlatform.is_active.is_(True))
    ).first()


def _submit_follow_ups(jobs: JobQueue, follow_ups: list[FollowUp]) -> None:
    """응답 내용이 커밋된 뒤에 호출합니다. 큐가 가득 차면 스케줄러가 다음 회차에 다시 잡습니다."""
    for follow_up in follow_ups:
        name = f"{follow_up.action}:{'/'.join(str(arg) for arg in follow_up.args)}"
        if not jobs.submit(name, FOLLOW_UP_JOBS[follow_up.action], *follow_up.args):
            logger.warning(f"[WEBHOOK] 후속 작업 등록 실패 (스케줄러 재시도 대기): {name}")


def _handle_in_session(session: Session, handle: Callable[[], IntakeReply]) -> IntakeReply | None:
    try:
        reply = handle()
        session.commit()
        return reply
    except Exception:
        logger.exception("[WEBHOOK] OTA 주문 처리 중 예외")
        session.rollback()
        return None


# Ctrip ---------------------------------------------------------------


def _ctrip_response(code: str, message: str, encrypted_body: str | None = None) -> JSONResponse:
    content: dict[str, Any] = {"header": {"resultCode": code, "resultMessage": message}}
    if encrypted_body is not None:
        content["body"] = encrypted_body
    return JSONResponse(content=content)


def _process_ctrip(raw: bytes, session: Session, jobs: JobQueue) -> JSONResponse:
    try:
        envelope = loads_json(raw)
    except CodecError as e:
        logger.warning(f"[WEBHOOK] Ctrip 주문 요청 파싱 실패: {e}")
        return _ctrip_response("0003", "报文解析失败")
    header = envelope.get("header") if isinstance(envelope, dict) else None
    encrypted = envelope.get("body") if isinstance(envelope, dict) else None
    if not isinstance(header, dict) or not isinstance(encrypted, str):
        return _ctrip_response("0003", "报文解析失败")

    platform = _platform(session, OtaPlatformCode.CTRIP)
    if platform is None:
        logger.error("[WEBHOOK] Ctrip 플랫폼 설정이 없습니다.")
        return _ctrip_response("0001", "供应商账户为空")
    try:
        client = CtripClient.from_config(platform.config or {})
    except ValueError as e:
        logger.error(f"[WEBHOOK] Ctrip 클라이언트 설정 오류: {e}")
        return _ctrip_response("0005", "系统处理异常")

    service_name = str(header.get("serviceName") or "")
    if str(header.get("accountId") or "") != client.account_id:
        logger.warning(f"[WEBHOOK] Ctrip accountId 불일치: {header.get('accountId')!r}")
        return _ctrip_response("0003", "供应商账户信息不正确")
    if not client.verify_inbound(header, encrypted):
        logger.warning(f"[WEBHOOK] Ctrip 서명 검증 실패: service={service_name}")
        return _ctrip_response("0002", "签名不正确")
    try:
        data = client.decrypt_inbound(encrypted)
    except CodecError as e:
        logger.warning(f"[WEBHOOK] Ctrip 본문 복호화 실패: service={service_name} error={e}")
        return _ctrip_response("0003", "报文解析失败")
    if not isinstance(data, dict):
        return _ctrip_response("0003", "报文解析失败")

    logger.info(f"[WEBHOOK] Ctrip 주문 요청 수신: service={service_name} otaOrderId={data.get('otaOrderId')}")
    intake = CtripOrderIntake(session, platform)
    reply = _handle_in_session(session, lambda: intake.handle(service_name, data))
    if reply is None:
        return _ctrip_response("0005", "系统处理异常")

    _submit_follow_ups(jobs, reply.follow_ups)
    if str(reply.code) != "0000":
        return _ctrip_response(str(reply.code), reply.message)
    return _ctrip_response("0000", "success", client.encrypt_response_body(reply.body) if reply.body else "")


@router.post("/ota/ctrip/order")
async def receive_ctrip_order(
    request: Request,
    session: Session = Depends(get_session),
    jobs: JobQueue = Depends(get_job_queue),
) -> JSONResponse:
    raw = await request.body()
    return await run_in_threadpool(_process_ctrip, raw, session, jobs)


# Meituan ---------------------------------------------------------------


def _meituan_response(
    client: MeituanClient | None,
    code: int,
    describe: str,
    body: Any = None,
    extra: dict[str, Any] | None = None,
    encrypt: bool = False,
) -> Response:
    envelope: dict[str, Any] = {"code": code, "describe": describe, "partnerId": client.partner_id if client else 0}
    envelope.update(extra or {})
    if body is not None:
        envelope["body"] = body
    if encrypt and client is not None:
        return Response(
            content=client.encrypt_response(envelope),
            media_type="text/plain",
            headers={ENCRYPTION_HEADER: "encrypted"},
        )
    return Response(content=compact_json(envelope), media_type="application/json")


def _process_meituan(action: str, raw: bytes, encrypted: bool, session: Session, jobs: JobQueue) -> Response:
    platform = _platform(session, OtaPlatformCode.MEITUAN)
    if platform is None:
        logger.error("[WEBHOOK] Meituan 플랫폼 설정이 없습니다.")
        return _meituan_response(None, 500, "合作方配置不存在")
    try:
        client = MeituanClient.from_config(platform.config or {})
    except ValueError as e:
        logger.error(f"[WEBHOOK] Meituan 클라이언트 설정 오류: {e}")
        return _meituan_response(None, 500, "系统处理异常")

    # 주문 생성 응답은 요청 암호화 여부와 관계없이 암호화
    encrypt_reply = encrypted or action == "create"
    try:
        data = client.decrypt_inbound(raw.decode("utf-8")) if encrypted else loads_json(raw)
    except (CodecError, UnicodeDecodeError) as e:
        logger.warning(f"[WEBHOOK] Meituan 요청 파싱 실패: action={action} error={e}")
        return _meituan_response(client, 400, "报文解析失败", encrypt=encrypt_reply)
    if not isinstance(data, dict):
        return _meituan_response(client, 400, "报文解析失败", encrypt=encrypt_reply)

    logger.info(f"[WEBHOOK] Meituan 요청 수신: action={action} encrypted={encrypted}")
    intake = MeituanOrderIntake(session, platform)
    reply = _handle_in_session(session, lambda: intake.handle(action, data))
    if reply is None:
        return _meituan_response(client, 500, "系统处理异常", encrypt=encrypt_reply)

    _submit_follow_ups(jobs, reply.follow_ups)
    return _meituan_response(client, reply.code, reply.message, reply.body, reply.envelope, encrypt=encrypt_reply)


def _is_encrypted(request: Request) -> bool:
    return request.headers.get(ENCRYPTION_HEADER, "").lower() == "encrypted"


@router.post("/ota/meituan/order/{action:path}")
async def receive_meituan_order(
    action: str,
    request: Request,
    session: Session = Depends(get_session),
    jobs: JobQueue = Depends(get_job_queue),
) -> Response:
    raw = await request.body()
    intake_action = MEITUAN_ORDER_ACTIONS.get(action.strip("/"))
    if intake_action is None:
        logger.warning(f"[WEBHOOK] Meituan 알 수 없는 주문 요청: {action}")
        return _meituan_response(None, 400, "未知接口类型")
    return await run_in_threadpool(_process_meituan, intake_action, raw, _is_encrypted(request), session, jobs)


@router.post("/ota/meituan/product/level/price/calendar/v2")
async def receive_meituan_price_calendar(
    request: Request,
    session: Session = Depends(get_session),
    jobs: JobQueue = Depends(get_job_queue),
) -> Response:
    raw = await request.body()
    return await run_in_threadpool(_process_meituan, "price_calendar", raw, _is_encrypted(request), session, jobs)
