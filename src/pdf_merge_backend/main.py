from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from .configuration import load_settings
from .database import JobDeletionError
from .engine import BatchEngine
from .job_manager import JobExpiredError, JobManager, SourceDownloadError
from .key_manager import AppRecord, KeyManager
from .models import (
    AppCreateRequest,
    AppCreateResponse,
    AppRecordResponse,
    BatchStatusResponse,
    BatchSubmitRequest,
    BatchSubmitResponse,
    MergeRequest,
)
from .utils import sanitize_filename

settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

engine = BatchEngine.build(settings)
job_manager = engine.job_manager
key_manager = engine.key_manager


@asynccontextmanager
async def lifespan(_: FastAPI):
    engine.start()
    try:
        yield
    finally:
        engine.stop()


app = FastAPI(title="PDF Merge API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_manager() -> JobManager:
    return job_manager


def get_key_manager() -> KeyManager:
    return key_manager


def require_app(
    x_api_key: Optional[str] = Header(None),
    keys: KeyManager = Depends(get_key_manager),
) -> AppRecord:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-Key header")
    record = keys.validate_token(x_api_key)
    if record is None:
        raise HTTPException(status_code=401, detail="Invalid or inactive API key")
    return record


def require_admin(x_api_key: Optional[str] = Header(None)) -> None:
    master_key = settings.admin_api_key
    if not master_key or not x_api_key or not secrets.compare_digest(x_api_key, master_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/merge")
def merge(request: MergeRequest, manager: JobManager = Depends(get_job_manager)) -> Response:
    try:
        data = manager.merge_sources(request)
    except SourceDownloadError as exc:
        raise HTTPException(
            status_code=502,
            detail={
                "error": str(exc),
                "failures": [failure.model_dump() for failure in exc.failures],
            },
        ) from exc

    filename = f"{sanitize_filename(request.title, 'merged')}.pdf"
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/batch", response_model=BatchSubmitResponse, status_code=202)
def submit_batch(
    request: BatchSubmitRequest,
    caller: AppRecord = Depends(require_app),
    manager: JobManager = Depends(get_job_manager),
) -> BatchSubmitResponse:
    summary = manager.submit(caller.id, request)
    engine.worker.wake()
    return summary


@app.get("/batch/{job_id}", response_model=BatchStatusResponse)
def batch_status(
    job_id: str,
    caller: AppRecord = Depends(require_app),
    manager: JobManager = Depends(get_job_manager),
) -> BatchStatusResponse:
    status = manager.get_status(job_id, caller.id)
    if status is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return status


@app.get("/batch/{job_id}/download/{group_name}")
def download_group(
    job_id: str,
    group_name: str,
    caller: AppRecord = Depends(require_app),
    manager: JobManager = Depends(get_job_manager),
) -> FileResponse:
    try:
        file_path = manager.resolve_download(job_id, group_name, caller.id)
    except JobExpiredError as exc:
        raise HTTPException(status_code=410, detail=str(exc)) from exc

    if file_path is None:
        raise HTTPException(status_code=404, detail="File not found or not yet processed")
    return FileResponse(file_path, media_type="application/pdf", filename=f"{group_name}.pdf")


@app.delete("/batch/{job_id}")
def delete_batch(
    job_id: str,
    caller: AppRecord = Depends(require_app),
    manager: JobManager = Depends(get_job_manager),
) -> Dict[str, Any]:
    try:
        deleted = manager.delete_job(job_id, caller.id)
    except JobDeletionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Batch not found")
    return {"id": job_id, "deleted": True}


@app.post("/admin/apps", response_model=AppCreateResponse, status_code=201, dependencies=[Depends(require_admin)])
def create_app_token(request: AppCreateRequest, keys: KeyManager = Depends(get_key_manager)) -> AppCreateResponse:
    token, record = keys.create_app(request.name)
    return AppCreateResponse(token=token, app=AppRecordResponse(**record.__dict__))


@app.get("/admin/apps", response_model=List[AppRecordResponse], dependencies=[Depends(require_admin)])
def list_app_tokens(keys: KeyManager = Depends(get_key_manager)) -> List[AppRecordResponse]:
    return [AppRecordResponse(**record.__dict__) for record in keys.list_apps()]


@app.post("/admin/apps/{app_id}/revoke", dependencies=[Depends(require_admin)])
def revoke_app_token(app_id: str, keys: KeyManager = Depends(get_key_manager)) -> Dict[str, str]:
    if not keys.revoke_app(app_id):
        raise HTTPException(status_code=404, detail="App not found")
    return {"status": "revoked"}


@app.delete("/admin/apps/{app_id}", dependencies=[Depends(require_admin)])
def delete_app_token(app_id: str, keys: KeyManager = Depends(get_key_manager)) -> Dict[str, Any]:
    job_count = engine.store.count_jobs_for_owner(app_id)
    if job_count > 0:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete app with {job_count} batch jobs. Revoke the app instead.",
        )
    if not keys.delete_app(app_id):
        raise HTTPException(status_code=404, detail="App not found")
    return {"id": app_id, "deleted": True}


@app.get("/admin/stats", dependencies=[Depends(require_admin)])
def group_stats(manager: JobManager = Depends(get_job_manager)) -> Dict[str, Dict[str, int]]:
    return {"groups": manager.group_counts()}
