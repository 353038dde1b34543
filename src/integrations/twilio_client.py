from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from xml.sax.saxutils import escape

from twilio.base.exceptions import TwilioException, TwilioRestException

from calls.errors import ProviderError
from calls.schemas import TelephonyCredentials

LOGGER = logging.getLogger(__name__)

PROVIDER = "twilio"

# Twilio answers 21220 when asked to update a call that is no longer active.
CALL_NOT_IN_PROGRESS = 21220

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


@dataclass(frozen=True)
class PlacedCall:
    sid: str
    status: str


def twiml_say_and_hangup(*, text: str, voice: str, language: str) -> str:
    say = escape(text)
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"<Say voice=\"{escape(voice)}\" language=\"{escape(language)}\">{say}</Say>"
        "<Hangup/>"
        "</Response>"
    )


def _provider_error(exc: Exception, action: str) -> ProviderError:
    if isinstance(exc, TwilioRestException):
        return ProviderError(
            f"Twilio {action} failed: {exc.msg}",
            provider=PROVIDER,
            code=exc.code,
            provider_status=exc.status,
        )
    return ProviderError(f"Twilio {action} failed: {exc}", provider=PROVIDER)


def build_twilio_client(credentials: TelephonyCredentials):
    from twilio.rest import Client

    return Client(credentials.account_sid, credentials.auth_token)


class TwilioTelephony:
    """Async facade over the synchronous Twilio REST client.

    SDK calls run in a worker thread so they never block the event loop that
    carries live media streams. Provider failures surface as ``ProviderError``.
    """

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_credentials(cls, credentials: TelephonyCredentials) -> TwilioTelephony:
        return cls(build_twilio_client(credentials))

    async def place_call(
        self,
        *,
        to: str,
        from_: str,
        url: str,
        status_callback: str,
        timeout: int,
    ) -> PlacedCall:
        try:
            call = await asyncio.to_thread(
                self._client.calls.create,
                to=to,
                from_=from_,
                url=url,
                method="POST",
                status_callback=status_callback,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                timeout=timeout,
                record=False,
            )
        except (TwilioException, OSError) as exc:
            raise _provider_error(exc, "call placement") from exc
        return PlacedCall(sid=str(call.sid), status=str(call.status or ""))

    async def end_call(self, call_sid: str, *, status: str = "completed") -> None:
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, status=status)
        except (TwilioException, OSError) as exc:
            raise _provider_error(exc, "call termination") from exc

    async def speak_and_hangup(
        self,
        call_sid: str,
        text: str,
        *,
        voice: str,
        language: str,
    ) -> None:
        """Replace the live call instructions with a spoken message and hang up."""

        twiml = twiml_say_and_hangup(text=text, voice=voice, language=language)
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, twiml=twiml)
        except (TwilioException, OSError) as exc:
            raise _provider_error(exc, "call update") from exc
