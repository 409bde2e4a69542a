"""
Domain errors raised by the lifecycle controller and the wizard.
The API maps them to HTTP statuses; the bot router turns them into short notices.
"""
from __future__ import annotations


class QuestError(Exception):
    """Base class; `message` is safe to show to the user."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(QuestError):
    status_code = 404


class InvalidState(QuestError):
    status_code = 409


class ValidationError(QuestError):
    status_code = 422
