"""Sync control routes: enqueue, trigger, status, lifecycle signals."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from fieldsync.models.job import WorkRecord
from fieldsync.models.sync import ForceSyncResult, JobAllowance, MediaRejection, SyncAction, SyncStatus
from fieldsync.sync.orchestrator import AppState

router = APIRouter()


def get_service(request: Request):
    return request.app.state.service


class EnqueueRequest(BaseModel):
    job: WorkRecord
    action: SyncAction = SyncAction.UPDATE


class EnqueueResponse(BaseModel):
    id: str
    status: SyncStatus


class ConnectivityRequest(BaseModel):
    online: bool


class LifecycleRequest(BaseModel):
    state: AppState


class RestoreResponse(BaseModel):
    restored: int
    failed: int
    not_authenticated: bool
    rejected_media: List[MediaRejection] = []


@router.post("/queue", response_model=EnqueueResponse)
async def enqueue(request: EnqueueRequest, service=Depends(get_service)):
    """
    Record a job locally and queue it for sync.
    Returns once the queue is persisted; the pass runs in the background.
    """
    service.jobs.upsert(request.job)
    item = service.orchestrator.enqueue(request.job, request.action)
    return EnqueueResponse(id=item.id, status=service.orchestrator.get_sync_status())


@router.delete("/queue", response_model=SyncStatus)
async def clear_queue(service=Depends(get_service)):
    """Drop all pending work (called on sign-out)."""
    service.orchestrator.clear_queue()
    return service.orchestrator.get_sync_status()


@router.post("/trigger", response_model=ForceSyncResult)
async def trigger_sync(service=Depends(get_service)):
    """Run a sync pass now (pull-to-refresh). Skipped if one is running."""
    return await service.orchestrator.force_sync()


@router.get("/status", response_model=SyncStatus)
async def sync_status(service=Depends(get_service)):
    return service.orchestrator.get_sync_status()


@router.post("/connectivity", response_model=SyncStatus)
async def connectivity(request: ConnectivityRequest, service=Depends(get_service)):
    service.orchestrator.on_connectivity_change(request.online)
    return service.orchestrator.get_sync_status()


@router.post("/lifecycle", response_model=SyncStatus)
async def lifecycle(request: LifecycleRequest, service=Depends(get_service)):
    service.orchestrator.on_app_state_change(request.state)
    return service.orchestrator.get_sync_status()


@router.get("/allowance", response_model=JobAllowance)
async def job_allowance(service=Depends(get_service)):
    """Whether the user's plan allows recording another job."""
    return await service.reconciler.can_create_job()


@router.post("/restore", response_model=RestoreResponse)
async def restore(service=Depends(get_service)):
    """Download the user's remote jobs that are missing locally."""
    report = await service.orchestrator.restore()
    if report is None:
        raise HTTPException(status_code=409, detail="Sync in progress")
    return RestoreResponse(
        restored=report.synced,
        failed=report.failed,
        not_authenticated=report.not_authenticated,
        rejected_media=report.rejections,
    )
