import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel

from engine.dtr_checks import detect_problems
from engine.errors import ReconcileError
from main import list_attendance, reconcile_punches, recalculate_records, store_manual_entry
from models.rules import ReconcileRules
from models.schema import AttendanceRecord, BatchReport, ManualEntry, PostingStatus
from utils.config import Settings, configure_logging
from utils.helper import AttendanceStore, EmployeeDirectory


class RecalculateRequest(BaseModel):
    start_date: date
    end_date: date
    employee_ids: Optional[List[int]] = None


def run_scheduled_recalculation(store: AttendanceStore, rules: ReconcileRules, today: date,
                                window_days: int = 7, max_workers: int = 1) -> BatchReport:
    logging.info(f"Running scheduled recalculation for the {window_days} days up to {today}")
    report = recalculate_records(store, rules, start_date=today - timedelta(days=window_days),
                                 end_date=today, max_workers=max_workers)
    logging.info("Scheduled recalculation completed.")
    return report


def create_app(store: Optional[AttendanceStore] = None, directory: Optional[EmployeeDirectory] = None,
               settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Attendance punch reconciliation")
    app.state.store = store if store is not None else AttendanceStore()
    app.state.directory = directory if directory is not None else EmployeeDirectory()
    app.state.settings = settings
    app.state.rules = settings.to_rules()

    @app.post("/punches", status_code=202)
    def receive_punches(punches: List[Dict[str, Any]], background_tasks: BackgroundTasks, request: Request):
        state = request.app.state
        background_tasks.add_task(reconcile_punches, punches, state.store, state.directory, state.rules,
                                  max_workers=state.settings.max_workers)
        return {"status": "Punches received, reconciling in background.", "count": len(punches)}

    @app.post("/attendance/recalculate", response_model=BatchReport)
    def recalculate(body: RecalculateRequest, request: Request):
        state = request.app.state
        if body.end_date < body.start_date:
            raise HTTPException(status_code=422, detail="end_date must not be before start_date")
        return recalculate_records(state.store, state.rules, start_date=body.start_date,
                                   end_date=body.end_date, employee_ids=body.employee_ids,
                                   max_workers=state.settings.max_workers)

    @app.post("/attendance/manual", response_model=AttendanceRecord)
    def manual_entry(entry: ManualEntry, request: Request):
        state = request.app.state
        try:
            return store_manual_entry(entry, state.store, state.rules, state.directory)
        except ReconcileError as exc:
            logging.warning(f"Manual attendance entry rejected: {exc}")
            raise HTTPException(status_code=422, detail=exc.message)

    @app.get("/attendance", response_model=List[AttendanceRecord])
    def attendance(request: Request, start_date: Optional[date] = None, end_date: Optional[date] = None,
                   posting_status: Optional[PostingStatus] = None, department: Optional[str] = None):
        state = request.app.state
        return list_attendance(state.store, state.directory, start_date, end_date, posting_status, department)

    @app.get("/attendance/problems")
    def problems(request: Request, start_date: Optional[date] = None, end_date: Optional[date] = None,
                 department: Optional[str] = None):
        state = request.app.state
        records = list_attendance(state.store, state.directory, start_date, end_date, department=department)
        return detect_problems(records)

    return app


app = create_app()
