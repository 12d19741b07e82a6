from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.services.billing_cron import billing_cron

router = APIRouter()


@router.get("/cron/jobs", tags=["cron"])
def list_jobs(db: Session = Depends(get_db)) -> list[dict]:
    return billing_cron.get_job_status(db)


@router.get("/cron/jobs/{name}", tags=["cron"])
def get_job(name: str, db: Session = Depends(get_db)) -> dict:
    return billing_cron.get_job_status(db, name)


@router.post("/cron/jobs/{name}/trigger", tags=["cron"])
def trigger_job(name: str, db: Session = Depends(get_db)) -> dict:
    return billing_cron.trigger(db, name)


@router.post("/cron/start", tags=["cron"])
def start_all(db: Session = Depends(get_db)) -> list[dict]:
    return billing_cron.start_all(db)


@router.post("/cron/stop", tags=["cron"])
def stop_all(db: Session = Depends(get_db)) -> list[dict]:
    return billing_cron.stop_all(db)
