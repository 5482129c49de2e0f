"""Messaging gateway API built with FastAPI.

The shop posts order notifications here as ``{to, text}``. The gateway
turns the phone number into a WhatsApp JID, stores the message in the
SQLAlchemy outbox (``repo.MessagesRepo``) and hands it to the channel
from a background task, so callers never wait on the channel itself.

The bundled channel only logs the message; a real WhatsApp session
plugs in by replacing ``channel``.
"""

import logging
import re
import time
import uuid

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import MessagesRepo, engine

app = FastAPI(title="Messaging Gateway")

JID_SUFFIX = "@s.whatsapp.net"
_NON_DIGITS = re.compile(r"\D")

logger = logging.getLogger("messaging")
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


class LogChannel:
    """Channel that writes deliveries to the log."""

    def deliver(self, jid: str, body: str) -> None:
        logger.info("message delivered", extra={"jid": jid, "text": body})


channel = LogChannel()


def to_jid(phone: str) -> str:
    """``+258 84 123 4567`` -> ``258841234567@s.whatsapp.net``."""
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        raise ValueError("phone has no digits")
    return f"{digits}{JID_SUFFIX}"


class MessageIn(BaseModel):
    """Request body for the messages endpoint.

    Attributes:
        to: Recipient phone number in any common format.
        text: Message body.
    """

    to: str = Field(min_length=1, max_length=32)
    text: str = Field(min_length=1, max_length=4096)


class MessageOut(BaseModel):
    id: uuid.UUID
    jid: str
    status: str


def dispatch(message_id: uuid.UUID, jid: str, body: str) -> None:
    try:
        channel.deliver(jid, body)
    except Exception:
        logger.exception("delivery failed", extra={"message_id": str(message_id)})
        MessagesRepo().mark(message_id, "FAILED")
        return
    MessagesRepo().mark(message_id, "SENT")


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/messages", response_model=MessageOut, status_code=202)
def send_message(req: MessageIn, background: BackgroundTasks):
    """Queue a message for delivery.

    Raises:
        HTTPException: 422 when ``to`` holds no digits.
    """
    try:
        jid = to_jid(req.to)
    except ValueError:
        raise HTTPException(status_code=422, detail="INVALID_RECIPIENT")
    msg = MessagesRepo().enqueue(jid, req.text)
    background.add_task(dispatch, msg.id, jid, req.text)
    return MessageOut(id=msg.id, jid=jid, status=msg.status)


@app.get("/messages/{message_id}", response_model=MessageOut)
def get_message(message_id: uuid.UUID):
    msg = MessagesRepo().get(message_id)
    if msg is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return MessageOut(id=msg.id, jid=msg.jid, status=msg.status)


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
