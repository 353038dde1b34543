"""FastAPI routes for placing, inspecting and ending calls."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from api.dependencies import (
    get_bridges,
    get_initiator,
    get_metrics,
    get_registry,
    get_terminator,
    get_transcript_query,
)
from api.schemas import (
    HealthResponse,
    InitiateCallRequest,
    InitiateCallResponse,
    MetricsResponse,
    TerminateCallResponse,
    TranscriptEntryOut,
    TranscriptResponse,
)
from calls.bridge import ActiveBridges
from calls.initiator import CallInitiator
from calls.metrics import RelayMetrics
from calls.query import TranscriptQuery
from calls.registry import SessionRegistry
from calls.schemas import CallContext, ProviderCredentials, TelephonyCredentials, VoiceAiCredentials
from calls.termination import CallTerminator
from config.settings import Settings, get_settings

router = APIRouter()


def require_api_key(x_api_key: Annotated[str | None, Header()] = None) -> None:
    settings = get_settings()
    if settings.call_api_key and x_api_key != settings.call_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _resolve_credentials(payload: InitiateCallRequest, settings: Settings) -> ProviderCredentials:
    supplied = payload.credentials
    telephony = supplied.telephony if supplied else None
    voice_ai = supplied.voice_ai if supplied else None
    return ProviderCredentials(
        telephony=TelephonyCredentials(
            account_sid=(telephony and telephony.account_sid) or settings.twilio_account_sid,
            auth_token=(telephony and telephony.auth_token) or settings.twilio_auth_token,
        ),
        voice_ai=VoiceAiCredentials(
            agent_id=(voice_ai and voice_ai.agent_id) or settings.voice_ai_agent_id,
            api_key=(voice_ai and voice_ai.api_key) or settings.voice_ai_api_key,
        ),
    )


def _public_base_url(request: Request, settings: Settings) -> str:
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    # Behind a proxy the request host may not be reachable by Twilio; prefer PUBLIC_BASE_URL.
    return str(request.base_url).rstrip("/")


@router.post(
    "/calls",
    response_model=InitiateCallResponse,
    dependencies=[Depends(require_api_key)],
)
async def initiate_call(
    payload: InitiateCallRequest,
    request: Request,
    initiator: CallInitiator = Depends(get_initiator),
) -> InitiateCallResponse:
    settings = get_settings()
    context = CallContext(
        script=payload.script or settings.default_script,
        persona=payload.persona or settings.default_persona,
        context=payload.context or settings.default_context,
    )
    result = await initiator.initiate_call(
        target_number=payload.target_number,
        caller_number=payload.caller_number or settings.twilio_from_number or "",
        context=context,
        credentials=_resolve_credentials(payload, settings),
        base_url=_public_base_url(request, settings),
    )
    return InitiateCallResponse(
        session_id=result.session_id,
        call_sid=result.call_sid,
        status=result.status,
    )


@router.get("/calls/{call_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    call_id: str,
    query: TranscriptQuery = Depends(get_transcript_query),
) -> TranscriptResponse:
    view = await query.get_transcript(call_id)
    return TranscriptResponse(
        session_id=view.session_id,
        call_sid=view.call_sid,
        status=view.status,
        duration_seconds=view.duration_seconds,
        transcript=[
            TranscriptEntryOut(role=entry.role, text=entry.text, timestamp=entry.timestamp)
            for entry in view.transcript
        ],
    )


@router.post(
    "/calls/{call_id}/terminate",
    response_model=TerminateCallResponse,
    dependencies=[Depends(require_api_key)],
)
async def terminate_call(
    call_id: str,
    terminator: CallTerminator = Depends(get_terminator),
) -> TerminateCallResponse:
    result = await terminator.terminate(call_id)
    return TerminateCallResponse(
        session_id=result.session_id,
        call_sid=result.call_sid,
        status=result.status,
        already_ended=result.already_ended,
    )


@router.get("/health", response_model=HealthResponse)
async def health(
    registry: SessionRegistry = Depends(get_registry),
    bridges: ActiveBridges = Depends(get_bridges),
) -> HealthResponse:
    return HealthResponse(sessions=len(registry), active_bridges=len(bridges))


@router.get("/relay/metrics", response_model=MetricsResponse)
async def relay_metrics(metrics: RelayMetrics = Depends(get_metrics)) -> MetricsResponse:
    return MetricsResponse(**metrics.snapshot())
