"""Structured ceremony event logging."""

from __future__ import annotations

import json
import logging

LOGGER = logging.getLogger("passkey_rp")

STAGE_LABELS = {
    "register": "Register",
    "authn": "Authenticate",
}

EVENT_LABELS = {
    ("register", "options.start"): "Creating Register Options",
    ("register", "user.new"): "Preparing new user record",
    ("register", "options.success"): "Issued Register Options",
    ("register", "verify.start"): "Verifying Registration",
    ("register", "verify.no_pending"): "No Pending Registration",
    ("register", "verify.failed"): "Registration Verification Failed",
    ("register", "verify.duplicate"): "Credential Already Registered",
    ("register", "verify.success"): "Registration Completed",
    ("authn", "options.start"): "Creating Authentication Options",
    ("authn", "options.unknown_user"): "Authentication Unknown User",
    ("authn", "options.success"): "Issued Authentication Options",
    ("authn", "verify.start"): "Verifying Authentication",
    ("authn", "verify.no_pending"): "No Pending Authentication",
    ("authn", "verify.unregistered"): "Authenticator Not Registered",
    ("authn", "verify.failed"): "Authentication Verification Failed",
    ("authn", "verify.clone"): "Possible Cloned Authenticator",
    ("authn", "verify.success"): "Authentication Completed",
}


def _truncate(value: str, limit: int = 64) -> str:
    if len(value) <= limit:
        return value
    half = limit // 2
    return f"{value[:half]}…{value[-half:]}"


def _build_payload(req: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"request_id": req}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = _truncate(value)
        else:
            payload[key] = value
    return payload


def log_event(stage: str, event: str, req: str, level: int = logging.INFO, **fields: object) -> None:
    stage_label = STAGE_LABELS.get(stage, stage.title())
    event_label = EVENT_LABELS.get((stage, event), event)
    payload = json.dumps(_build_payload(req, **fields), indent=2, sort_keys=True, default=str)
    message = f"[RP Server: {stage_label}]: {event_label}\n{payload}"
    LOGGER.log(level, message)
