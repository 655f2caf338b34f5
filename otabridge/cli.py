import argparse
import logging
import signal
import sys
import threading

from otabridge.db import session_factory
from otabridge.worker import (
    JobQueue,
    cancel_order_job,
    confirm_order_job,
    schedule_order_status_polls,
    schedule_pending_confirmations,
    schedule_price_stock_sync,
)

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("otabridge.cli")


def _run_once(jobs: JobQueue, schedule) -> int:
    with session_factory() as session:
        scheduled = schedule(session, jobs)
    done = jobs.run_pending()
    logger.info(f"[CLI] 완료: scheduled={scheduled} processed={done}")
    return done


def run_sync_price_stock(args) -> None:
    _run_once(JobQueue(queue_size=args.queue_size), schedule_price_stock_sync)


def run_poll_orders(args) -> None:
    jobs = JobQueue(queue_size=args.queue_size)
    if args.include_pending:
        with session_factory() as session:
            schedule_pending_confirmations(session, jobs)
    _run_once(jobs, schedule_order_status_polls)


def run_confirm_order(args) -> None:
    outcome = JobQueue().run_job(f"confirm:{args.order_no}", confirm_order_job, (args.order_no,), {})
    if outcome is None:
        logger.error(f"[CLI] 접수 처리되지 않음: {args.order_no}")
        sys.exit(1)
    logger.info(f"[CLI] 접수 결과: order={outcome.order_no} status={outcome.status} skipped={outcome.skipped} msg={outcome.message}")
    if not outcome.success and not outcome.skipped:
        sys.exit(1)


def run_cancel_order(args) -> None:
    outcome = JobQueue().run_job(f"cancel:{args.order_no}", cancel_order_job, (args.order_no, args.reason), {})
    if outcome is None:
        logger.error(f"[CLI] 취소 처리되지 않음: {args.order_no}")
        sys.exit(1)
    logger.info(f"[CLI] 취소 결과: order={outcome.order_no} status={outcome.status} skipped={outcome.skipped} msg={outcome.message}")
    if not outcome.success and not outcome.skipped:
        sys.exit(1)


def run_worker(args) -> None:
    """스케줄러를 주기적으로 돌리며 워커 풀로 작업을 처리합니다."""
    jobs = JobQueue()
    jobs.start()
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    try:
        while not stop.is_set():
            with session_factory() as session:
                schedule_pending_confirmations(session, jobs)
                schedule_order_status_polls(session, jobs)
                schedule_price_stock_sync(session, jobs)
            jobs.join()
            stop.wait(args.interval)
    except KeyboardInterrupt:
        logger.info("[CLI] 중단 요청")
    finally:
        jobs.stop(wait=True)


COMMANDS = {
    "sync-price-stock": run_sync_price_stock,
    "poll-orders": run_poll_orders,
    "confirm-order": run_confirm_order,
    "cancel-order": run_cancel_order,
    "worker": run_worker,
}


def main(argv=None):
    parser = argparse.ArgumentParser(description="otabridge Operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("sync-price-stock", help="Push changed price/stock to OTA platforms")
    sync_parser.add_argument("--queue-size", type=int, default=100000)

    poll_parser = subparsers.add_parser("poll-orders", help="Refresh status of orders waiting on resource providers")
    poll_parser.add_argument("--queue-size", type=int, default=100000)
    poll_parser.add_argument("--include-pending", action="store_true", help="Also confirm paid_pending orders")

    confirm_parser = subparsers.add_parser("confirm-order", help="Confirm one order with its resource provider")
    confirm_parser.add_argument("--order-no", required=True)

    cancel_parser = subparsers.add_parser("cancel-order", help="Cancel one order with its resource provider")
    cancel_parser.add_argument("--order-no", required=True)
    cancel_parser.add_argument("--reason", default="")

    worker_parser = subparsers.add_parser("worker", help="Run schedulers and the worker pool")
    worker_parser.add_argument("--interval", type=float, default=300.0, help="Seconds between scheduling rounds")

    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return
    try:
        handler(args)
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
