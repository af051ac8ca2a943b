from typing import Any, Dict
import json
from fastapi import APIRouter, Request
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.exceptions import Unauthorized, ValidationError
from models.request import ChallengeMode, ChallengeRequest
from models.response import HealthResponse

router = APIRouter(tags=["cloudflare"])

_VALID_MODES = {mode.value for mode in ChallengeMode}

async def _read_body(req: Request) -> Dict[str, Any]:
    try:
        data = await req.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("missing or invalid mode")
    return data

def _parse_request(data: Dict[str, Any]) -> ChallengeRequest:
    try:
        return ChallengeRequest.model_validate(data)
    except PydanticValidationError as e:
        error = e.errors()[0]
        field = error["loc"][0] if error["loc"] else None
        if field == "mode":
            raise ValidationError("missing or invalid mode")
        if field == "domain":
            raise ValidationError("missing or invalid domain")
        if field is None:
            raise ValidationError("missing siteKey for turnstile mode")
        raise ValidationError(f"invalid {field}")

@router.post("/cloudflare")
async def solve_challenge(req: Request):
    """
    Solve a Turnstile widget or an IUAM challenge and return the token or clearance
    """
    data = await _read_body(req)
    mode = data.get("mode")
    if not isinstance(mode, str) or mode not in _VALID_MODES:
        raise ValidationError("missing or invalid mode")

    if settings.AUTH_TOKEN and data.get("authToken") != settings.AUTH_TOKEN:
        raise Unauthorized()

    request = _parse_request(data)
    logger.info(f"Processing {request.mode.value} request for {request.domain}")
    return await req.app.state.challenge_service.solve(request)

@router.get("/health", response_model=HealthResponse)
async def health_check(req: Request):
    return HealthResponse(status="ok", **req.app.state.challenge_service.stats())
