from fastapi import FastAPI

from otabridge.api import ota_orders, webhooks
from otabridge.worker import JobQueue

app = FastAPI(title="otabridge")

app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(ota_orders.router, prefix="/webhooks", tags=["OTA Orders"])

app.state.jobs = JobQueue()


@app.on_event("startup")
def on_startup() -> None:
    app.state.jobs.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    app.state.jobs.stop(wait=True)


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "pending_jobs": app.state.jobs.pending()}
