"""FastAPI application that serves the calm script generator."""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from script_builder.clients.openai import CompletionClient
from script_builder.clients.stripe import PaymentVerifier
from script_builder.config import Settings, get_settings
from script_builder.errors import AdmissionRejected, ScriptBuilderError, ValidationError
from script_builder.logging_config import configure_logging
from script_builder.prompts import GenerationMode, GenerationRequest, build_messages
from script_builder.rate_limit import AdmissionController
from script_builder.utils import client_identifier, now_ms

settings = get_settings()
configure_logging(settings.log_level)
LOGGER = logging.getLogger(__name__)

controller = AdmissionController.from_settings(settings)
generator = CompletionClient(settings)
payment_verifier = PaymentVerifier(settings)

RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

app = FastAPI(title="Calm Script Builder")


def json_response(
    status_code: int, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


@app.middleware("http")
async def apply_response_headers(request: Request, call_next):  # type: ignore[override]
    try:
        response = await call_next(request)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Unhandled exception", extra={"client_ip": _request_ip(request)})
        response = json_response(500, {"error": f"Server error: {exc}"})
    for name, value in RESPONSE_HEADERS.items():
        response.headers[name] = value
    return response


@app.exception_handler(ScriptBuilderError)
async def handle_script_builder_error(request: Request, exc: ScriptBuilderError) -> JSONResponse:
    headers = None
    if isinstance(exc, AdmissionRejected) and exc.retry_after_seconds:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.status_code >= 500:
        LOGGER.warning("request failed", extra={"status": exc.status_code})
    return json_response(exc.status_code, {"error": exc.message}, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = "Method not allowed." if exc.status_code == 405 else str(exc.detail)
    return json_response(exc.status_code, {"error": message}, headers=getattr(exc, "headers", None))


def get_controller() -> AdmissionController:
    """Provide the process-wide admission controller."""

    return controller


def get_generator() -> CompletionClient:
    """Provide a configured completion client."""

    return generator


def get_payment_verifier() -> PaymentVerifier:
    """Provide a configured payment verifier."""

    return payment_verifier


def get_clock() -> Callable[[], int]:
    return now_ms


def _request_ip(request: Request) -> str:
    return client_identifier(request.headers, request.client.host if request.client else None)


def max_body_bytes(app_settings: Settings) -> int:
    # Room for a fully \u-escaped prompt plus the optional fields.
    return app_settings.max_prompt_chars * 6 + 16_384


async def _read_json(request: Request, limit: int) -> Any:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise ValidationError("Request body too large.")
    raw = b""
    async for chunk in request.stream():
        raw += chunk
        if len(raw) > limit:
            raise ValidationError("Request body too large.")
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise ValidationError("Invalid JSON body.") from exc


@app.api_route("/api/generate", methods=ALL_METHODS)
@app.api_route("/.netlify/functions/generate", methods=ALL_METHODS)
async def generate(
    request: Request,
    app_settings: Settings = Depends(get_settings),
    admission: AdmissionController = Depends(get_controller),
    completion_client: CompletionClient = Depends(get_generator),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    clock: Callable[[], int] = Depends(get_clock),
) -> JSONResponse:
    """Admit, validate and forward a generation request."""

    if request.method == "OPTIONS":
        return json_response(200, {"text": ""})
    if request.method != "POST":
        return json_response(405, {"error": "Method not allowed."})

    client_ip = _request_ip(request)
    result = admission.check(client_ip, clock())
    if not result.admitted:
        LOGGER.info(
            "admission rejected",
            extra={"client_ip": client_ip, "reason": result.reason.value if result.reason else None},
        )
        raise AdmissionRejected(
            result,
            max_requests=admission.max_requests,
            window_ms=admission.window_ms,
        )

    payload = await _read_json(request, max_body_bytes(app_settings))
    generation = GenerationRequest.from_payload(payload, app_settings.max_prompt_chars)

    if generation.mode is GenerationMode.FULL:
        await run_in_threadpool(verifier.require_paid, generation.session_id)
        max_tokens = app_settings.full_max_tokens
    else:
        max_tokens = app_settings.preview_max_tokens

    LOGGER.info("generating", extra={"client_ip": client_ip, "mode": generation.mode.value})
    text = await run_in_threadpool(
        completion_client.complete, build_messages(generation), max_tokens=max_tokens
    )
    return json_response(200, {"text": text})


@app.api_route("/api/verify-session", methods=ALL_METHODS)
@app.api_route("/.netlify/functions/verifySession", methods=ALL_METHODS)
async def verify_session(
    request: Request,
    app_settings: Settings = Depends(get_settings),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
) -> JSONResponse:
    """Report whether a checkout session has been paid."""

    if request.method == "OPTIONS":
        return json_response(200, {"ok": True})
    if request.method != "POST":
        return json_response(405, {"error": "Method not allowed."})

    payload = await _read_json(request, max_body_bytes(app_settings))
    raw_id = payload.get("session_id") if isinstance(payload, dict) else None
    session_id = raw_id.strip() if isinstance(raw_id, str) else ""
    if not session_id:
        raise ValidationError("Missing session_id.")

    if await run_in_threadpool(verifier.is_paid, session_id):
        return json_response(200, {"ok": True})
    return json_response(403, {"ok": False, "error": "Payment not verified."})


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    return {"status": "ok"}


def serve() -> None:
    """Run the API with uvicorn (``calm-script-builder`` console script)."""

    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
