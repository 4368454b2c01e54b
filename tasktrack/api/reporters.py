"""
Reporter control: status, start and cooperative stop of per-host reporters
"""

import logging

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool

from ..schemas.query import ReporterInfo, ReporterStartRequest, ReporterStartResult, ReporterStopRequest
from ..services import query, reporter

logger = logging.getLogger("tasktrack.api")

router = APIRouter(tags=["Reporters"])


@router.get("/reporters/{hostname}", response_model=ReporterInfo)
def reporter_status(hostname: str):
    status = query.get_reporter_status(hostname)
    if status is None:
        raise HTTPException(status_code=404, detail="No reporter registered for host")
    return status


@router.post("/reporters/start", response_model=ReporterStartResult,
             summary="Launch a reporter on the API's own host")
def start_reporter(body: ReporterStartRequest):
    result = reporter.launch_reporter(force=body.force)
    logger.info("reporter start requested via API", extra={
        "component": "api", "hostname": result.hostname, "started": result.started})
    return result


@router.post("/reporters/{hostname}/stop")
async def stop_reporter(hostname: str, body: ReporterStopRequest):
    """Set the shutdown flag and wait up to `timeout` seconds for the reporter to exit."""
    stopped = await run_in_threadpool(reporter.stop_reporter, hostname, body.timeout)
    return {"hostname": hostname, "stopped": stopped}
