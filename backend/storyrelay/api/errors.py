from __future__ import annotations

from fastapi import status


def conversation_status(code: str) -> int:
    if code in {"CONVERSATION_NOT_FOUND", "TURN_NOT_FOUND"}:
        return status.HTTP_404_NOT_FOUND
    if code.endswith("_BUSY"):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def provider_status(code: str) -> int:
    if code in {
        "CREDENTIAL_MISSING",
        "API_KEY_REQUIRED",
        "PROVIDER_MODEL_INVALID",
        "PROVIDER_BASE_URL_MISSING",
        "PROVIDER_UNSUPPORTED",
    }:
        return status.HTTP_400_BAD_REQUEST
    if code in {"APP_SECRET_MISSING"}:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_502_BAD_GATEWAY
