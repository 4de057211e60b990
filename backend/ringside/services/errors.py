from __future__ import annotations


class ChallengeError(Exception):
    message = "Challenge operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidChallenge(ChallengeError):
    message = "Challenge not found or invalid"


class AlreadyInChallenge(ChallengeError):
    message = "You are already in an active challenge"


class ChallengeEnded(ChallengeError):
    message = "This challenge has ended"


class ParticipantUpdateFailed(ChallengeError):
    message = "Failed to update participant data"


class DuplicateEvent(ChallengeError):
    """The feedback was already counted; callers report it as benign."""
    message = "already added"
