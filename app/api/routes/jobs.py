import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.api.deps import get_job_context, require_job_context
from app.api.models import ContentGenerationRequest, JobCancelResponse, JobCreateResponse, JobStatusResponse, NarrativeItem, NarrativeResponse, WebsiteAnalysisRequest
from app.broker.connection import get_connection
from app.config import Settings, get_settings
from app.jobs.channels import narrative_channel
from app.jobs.errors import ServiceUnavailableError
from app.jobs.models import TERMINAL_STATUSES, JobContext
from app.jobs.streaming import SseFrameBuffer, format_sse, narrative_key, narrative_payload, replay_narrative
from app.services import jobs as job_service
from app.services.narrative import get_narrative_stream
from app.utils.ids import generate_connection_id

router = APIRouter()
logger = logging.getLogger("app.api.routes.jobs")

_JOB_NOT_FOUND_MSG = "Job not found or access denied"
_NARRATIVE_ONLY_MSG = "Narrative stream is only available for website_analysis jobs"
_SSE_HEADERS = {"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
# Warn clients this long before the stream closes so they can fall back to polling.
_TIMEOUT_WARNING_SECONDS = 10


def _not_found() -> HTTPException:
  return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_JOB_NOT_FOUND_MSG)


@router.post("/website-analysis", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_website_analysis_job(  # noqa: B008
  payload: WebsiteAnalysisRequest,
  context: Annotated[JobContext, Depends(get_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> JobCreateResponse:
  """Queue analysis of a website for a user or anonymous session."""
  # A body sessionId wins over the header for anonymous website analysis.
  session_id = payload.session_id or context.session_id
  if not context.user_id and not session_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Provide x-session-id header or authenticate")

  handle = await job_service.create_job("website_analysis", {"url": payload.url}, JobContext(user_id=context.user_id, session_id=session_id), settings)
  return JobCreateResponse(job_id=handle.job_id)


@router.post("/content-generation", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_content_generation_job(  # noqa: B008
  payload: ContentGenerationRequest,
  context: Annotated[JobContext, Depends(require_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> JobCreateResponse:
  """Queue blog content generation for an authenticated user."""
  if not context.user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Content generation requires an authenticated user")

  # The organization doubles as the tenant for content jobs.
  job_input = {
    "topic": payload.topic,
    "businessInfo": payload.business_info,
    "organizationId": payload.organization_id,
    "additionalInstructions": payload.additional_instructions,
    "options": payload.options,
  }
  handle = await job_service.create_job("content_generation", job_input, JobContext(user_id=context.user_id, tenant_id=payload.organization_id), settings)
  return JobCreateResponse(job_id=handle.job_id)


@router.get("/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  context: Annotated[JobContext, Depends(require_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the status and result of a job owned by the caller."""
  view = await job_service.get_job_status(job_id, context, settings)
  if view is None:
    raise _not_found()
  return JobStatusResponse.from_view(view)


@router.post("/{job_id}/retry", response_model=JobCreateResponse)
async def retry_job(  # noqa: B008
  job_id: str,
  context: Annotated[JobContext, Depends(require_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> JobCreateResponse:
  """Requeue a failed job under the same id."""
  handle = await job_service.retry_job(job_id, context, settings)
  if handle is None:
    raise _not_found()
  return JobCreateResponse(job_id=handle.job_id)


@router.post("/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(  # noqa: B008
  job_id: str,
  context: Annotated[JobContext, Depends(require_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> JobCancelResponse:
  """Request cancellation of a queued or running job."""
  ack = await job_service.cancel_job(job_id, context, settings)
  if ack is None:
    raise _not_found()
  return JobCancelResponse(cancelled=ack.cancelled)


@router.get("/{job_id}/narrative", response_model=NarrativeResponse)
async def get_job_narrative(  # noqa: B008
  job_id: str,
  context: Annotated[JobContext, Depends(require_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> NarrativeResponse:
  """Return every narrative event stored so far, for clients that poll instead of streaming."""
  # Ownership is checked through the status lookup before reading the narrative.
  view = await job_service.get_job_status(job_id, context, settings)
  if view is None:
    raise _not_found()
  items = await get_narrative_stream(job_id, settings)
  return NarrativeResponse(job_id=job_id, events=[NarrativeItem.model_validate(item) for item in items if item.get("type")])


async def _narrative_events(job_id: str, context: JobContext, settings: Settings, redis: Redis, request: Request) -> AsyncIterator[str]:
  """Replay stored narrative, then relay live items until the job finishes or the stream ages out."""
  # Deadlines are measured on the loop clock.
  loop = asyncio.get_running_loop()
  connection_id = generate_connection_id()
  channel = narrative_channel(job_id)
  max_age = settings.job_stream_max_age_seconds
  poll_seconds = settings.job_stream_poll_seconds
  deadline = loop.time() + max_age
  warn_at = deadline - _TIMEOUT_WARNING_SECONDS

  yield format_sse("connected", {"jobId": job_id, "connectionId": connection_id, "maxAgeSeconds": max_age})

  # Subscribe before replaying so nothing published during the replay is lost.
  pubsub = redis.pubsub()
  await pubsub.subscribe(channel)
  try:
    buffer = SseFrameBuffer()
    # Items stored before the replay read may also arrive live; they are sent once.
    replayed = {narrative_key(item) for item in await replay_narrative(job_id, connection_id, buffer, settings)}
    for frame in buffer.drain(connection_id):
      yield frame

    warned = False
    next_status_check = loop.time()
    while True:
      if await request.is_disconnected():
        logger.info("Narrative stream client disconnected job_id=%s connection_id=%s", job_id, connection_id)
        return

      now = loop.time()
      # Terminal or vanished jobs end the stream.
      if now >= next_status_check:
        view = await job_service.get_job_status(job_id, context, settings)
        if view is None or view.status in TERMINAL_STATUSES:
          yield format_sse("complete", {})
          return
        next_status_check = now + poll_seconds

      if now >= deadline:
        return
      if not warned and now >= warn_at:
        warned = True
        yield format_sse("stream-timeout", {"jobId": job_id, "message": "Stream closing soon; poll the job status endpoint for updates"})

      message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=max(0.0, min(next_status_check, deadline) - now))
      if message is None or message.get("type") != "message":
        continue
      try:
        item = json.loads(message["data"])
      except (TypeError, json.JSONDecodeError):
        logger.warning("Invalid narrative message job_id=%s", job_id)
        continue
      if not isinstance(item, dict) or not item.get("type"):
        continue
      if narrative_key(item) in replayed:
        logger.debug("Skipping replayed narrative item job_id=%s type=%s", job_id, item["type"])
        continue
      yield format_sse(str(item["type"]), narrative_payload(item))
  finally:
    try:
      await pubsub.unsubscribe(channel)
      await pubsub.aclose()
    except RedisError:
      logger.warning("Failed to close narrative subscription job_id=%s", job_id, exc_info=True)


@router.get("/{job_id}/narrative-stream")
async def stream_job_narrative(  # noqa: B008
  job_id: str,
  request: Request,
  context: Annotated[JobContext, Depends(require_job_context)],
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> StreamingResponse:
  """Server-sent narrative events for website analysis jobs; replays stored items on reconnect."""
  view = await job_service.get_job_status(job_id, context, settings)
  if view is None:
    raise _not_found()
  if view.type != "website_analysis":
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NARRATIVE_ONLY_MSG)

  redis = get_connection()
  if redis is None:
    raise ServiceUnavailableError("Redis is not configured (narrative stream requires Redis)")

  return StreamingResponse(_narrative_events(job_id, context, settings, redis, request), media_type="text/event-stream", headers=_SSE_HEADERS)
