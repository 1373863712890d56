from pydantic import BaseModel, ConfigDict


class WorkerStatsOut(BaseModel):
    pending: int
    queued: int
    processing: int
    paid: int
    failed: int
    api_retry: int
    lock_holder: str | None = None
    lock_contended_ticks: int = 0

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "pending": 2,
                "queued": 0,
                "processing": 1,
                "paid": 140,
                "failed": 3,
                "api_retry": 1,
                "lock_holder": "billing-worker-1:4211",
                "lock_contended_ticks": 0,
            }
        }
    )
