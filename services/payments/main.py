"""Mobile-money provider sandbox built with FastAPI.

This service stands in for an M-Pesa style C2B payment provider. It
accepts payment initiation requests in the provider's wire format
(``input_*`` fields in, ``output_*`` fields out), acknowledges them
immediately and later delivers the final result to the merchant's
callback URL, the same two-step protocol the shop speaks in production.

Simulated outcomes: amounts above ``SANDBOX_BALANCE_LIMIT`` fail with
``INS-2006`` (insufficient balance); everything else succeeds with
``INS-0``. Requests are deduplicated by third-party reference.

The merchant initiates the payment inside its checkout transaction, so a
callback sent right after the acknowledgment can reach the merchant before
that transaction commits and find no order. The first delivery attempt
therefore waits ``SANDBOX_CALLBACK_DELAY`` seconds.
"""

import logging
import os
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Annotated, Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import DuplicateReference, PaymentsRepo, canonical_hash, engine

app = FastAPI(title="Mobile Money Sandbox")

API_KEY = os.getenv("SANDBOX_API_KEY", "")
SERVICE_PROVIDER_CODE = os.getenv("SANDBOX_SERVICE_PROVIDER_CODE", "")
CALLBACK_URL = os.getenv("SANDBOX_CALLBACK_URL", "")
CALLBACK_DELAY = float(os.getenv("SANDBOX_CALLBACK_DELAY", "1.0"))
CALLBACK_RETRIES = int(os.getenv("SANDBOX_CALLBACK_RETRIES", "3"))
CALLBACK_BACKOFF_BASE = float(os.getenv("SANDBOX_CALLBACK_BACKOFF_BASE", "0.5"))
BALANCE_LIMIT = Decimal(os.getenv("SANDBOX_BALANCE_LIMIT", "100000"))

SUCCESS = ("INS-0", "Request processed successfully")

logger = logging.getLogger("payments-sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


class C2BPaymentRequest(BaseModel):
    """Payment initiation body, in the provider's field names."""

    input_TransactionReference: str = Field(min_length=1, max_length=64)
    input_CustomerMSISDN: str = Field(min_length=1)
    input_Amount: str = Field(min_length=1)
    input_ThirdPartyReference: str = Field(min_length=1, max_length=64)
    input_ServiceProviderCode: str = ""


def _error(status_code: int, code: str, desc: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"output_ResponseCode": code, "output_ResponseDesc": desc, **extra},
    )


@app.exception_handler(RequestValidationError)
async def _missing_parameters(request: Request, exc: RequestValidationError):
    return _error(400, "INS-20", "Not All Parameters Provided. Please try again.", output_error=str(exc.errors()))


def _outcome(amount: Decimal) -> tuple[str, str]:
    if amount > BALANCE_LIMIT:
        return "INS-2006", "Insufficient balance"
    return SUCCESS


def _ack(row) -> dict:
    return {
        "output_ConversationID": row.conversation_id,
        "output_TransactionID": row.transaction_id,
        "output_ResponseCode": SUCCESS[0],
        "output_ResponseDesc": SUCCESS[1],
        "output_ThirdPartyReference": row.third_party_reference,
    }


def deliver_callback(reference: str) -> bool:
    """POST the final result for ``reference`` to the merchant callback URL.

    Waits ``CALLBACK_DELAY`` seconds before the first attempt, then retries
    with exponential backoff on transport errors and non-2xx answers.
    Returns True once the merchant acknowledged the callback.
    """
    if not CALLBACK_URL:
        logger.info("no callback url configured", extra={"reference": reference})
        return False
    if CALLBACK_DELAY > 0:
        time.sleep(CALLBACK_DELAY)
    row = PaymentsRepo().get(reference)
    if row is None:
        return False
    payload = {
        "input_ThirdPartyReference": row.third_party_reference,
        "input_TransactionID": row.transaction_id,
        "input_ConversationID": row.conversation_id,
        "input_ResultCode": row.result_code,
        "input_ResultDesc": row.result_description,
    }
    for attempt in range(1, CALLBACK_RETRIES + 1):
        try:
            resp = httpx.post(CALLBACK_URL, json=payload, timeout=5.0)
            if 200 <= resp.status_code < 300:
                PaymentsRepo().mark_callback_delivered(reference)
                logger.info("callback delivered", extra={"reference": reference, "attempt": attempt})
                return True
            logger.warning("callback rejected", extra={"reference": reference, "status_code": resp.status_code})
        except httpx.HTTPError as e:
            logger.warning("callback failed", extra={"reference": reference, "error": repr(e)})
        if attempt < CALLBACK_RETRIES:
            time.sleep(CALLBACK_BACKOFF_BASE * (2 ** (attempt - 1)))
    return False


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/ipg/v1x/c2bPayment/singleStage/", status_code=201)
def c2b_single_stage(
    req: C2BPaymentRequest,
    background: BackgroundTasks,
    authorization: Annotated[Optional[str], Header()] = None,
):
    """Acknowledge a payment initiation and schedule its callback.

    Returns:
        201 with ``output_ConversationID``, ``output_TransactionID``,
        ``output_ResponseCode`` and ``output_ResponseDesc``. An identical
        retry replays the stored acknowledgment without a second callback.

    Error answers carry ``output_ResponseCode``/``output_ResponseDesc``:
    401 ``INS-2001`` bad credentials, 400 ``INS-13`` unknown service
    provider code, 400 ``INS-2051`` invalid MSISDN, 400 ``INS-21`` invalid
    amount, 409 ``INS-10`` reference reused with a different payload.
    """
    if API_KEY and authorization != f"Bearer {API_KEY}":
        return _error(401, "INS-2001", "Initiator authentication error.")
    if SERVICE_PROVIDER_CODE and req.input_ServiceProviderCode != SERVICE_PROVIDER_CODE:
        return _error(400, "INS-13", "Invalid Shortcode Used")
    msisdn = req.input_CustomerMSISDN
    if not (len(msisdn) == 12 and msisdn.isdigit() and msisdn.startswith("258")):
        return _error(400, "INS-2051", "MSISDN invalid.")
    try:
        amount = Decimal(req.input_Amount)
    except InvalidOperation:
        return _error(400, "INS-21", "Parameter validations failed. Please try again.")
    if not amount.is_finite() or amount <= 0:
        return _error(400, "INS-21", "Parameter validations failed. Please try again.")

    result_code, result_desc = _outcome(amount)
    try:
        created, row = PaymentsRepo().create_request(
            third_party_reference=req.input_ThirdPartyReference,
            transaction_reference=req.input_TransactionReference,
            msisdn=msisdn,
            amount=amount,
            service_provider_code=req.input_ServiceProviderCode,
            request_hash=canonical_hash(req.model_dump()),
            result_code=result_code,
            result_description=result_desc,
        )
    except DuplicateReference:
        return _error(409, "INS-10", "Duplicate Transaction")

    if created:
        logger.info(
            "payment accepted",
            extra={"reference": row.third_party_reference, "amount": str(amount), "result_code": result_code},
        )
        background.add_task(deliver_callback, row.third_party_reference)
    return _ack(row)


@app.get("/payments/{reference}")
def get_payment(reference: str):
    row = PaymentsRepo().get(reference)
    if row is None:
        return _error(404, "INS-2002", "Invalid transaction reference.")
    return {
        "third_party_reference": row.third_party_reference,
        "msisdn": row.msisdn,
        "amount": str(row.amount),
        "result_code": row.result_code,
        "result_description": row.result_description,
        "callback_delivered": row.callback_delivered,
    }


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
