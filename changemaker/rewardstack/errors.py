"""
changemaker.rewardstack.errors — RewardSTACK Error Taxonomy
===========================================================
"""

from __future__ import annotations

import enum
from typing import Any


class RewardStackErrorCode(enum.StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


class RewardStackError(Exception):
    """A RewardSTACK call failed.

    ``status_code`` is ``None`` for transport failures; ``response`` holds
    the decoded error body when the API sent one.
    """

    def __init__(
        self,
        message: str,
        code: RewardStackErrorCode,
        status_code: int | None = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.response = response


def code_for_status(status_code: int) -> RewardStackErrorCode:
    if status_code == 401:
        return RewardStackErrorCode.UNAUTHORIZED
    if status_code == 403:
        return RewardStackErrorCode.FORBIDDEN
    if status_code == 404:
        return RewardStackErrorCode.NOT_FOUND
    if status_code == 429:
        return RewardStackErrorCode.RATE_LIMIT
    if status_code >= 500:
        return RewardStackErrorCode.SERVER_ERROR
    return RewardStackErrorCode.VALIDATION_ERROR
