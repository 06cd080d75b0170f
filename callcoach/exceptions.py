"""
CallCoach error types.

Setup-time failures are surfaced to the client as typed ``error`` events;
external capability failures are recovered locally by the caller.
"""

from typing import Optional


class CoachError(Exception):
    """Base class for every error raised inside the coaching service"""

    code = "COACH_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class AuthenticationError(CoachError):
    code = "UNAUTHORIZED"


class CallSetupError(CoachError):
    """A call could not be started (missing profile, script, record...)"""

    code = "CALL_SETUP_FAILED"

    def to_event(self) -> dict:
        return {
            "type": "error",
            "payload": {"message": self.message, "code": self.code},
        }


class CompletionError(CoachError):
    code = "COMPLETION_FAILED"


class TranscriptionError(CoachError):
    code = "TRANSCRIPTION_FAILED"
