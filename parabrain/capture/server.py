"""
Capture Server

FastAPI server for receiving captures from the web app and chat channels.

Endpoints:
- POST /capture: Text capture (web app, shortcuts)
- POST /capture/image: Image capture (receipt, slip, screenshot)
- POST /telegram/webhook: Telegram Bot API webhook
- POST /line/webhook: LINE Messaging API webhook
- GET /health: Health check
- GET /stats: Capture log status counts

Every inbound event goes through CaptureIntake, so a redelivered event is
replayed from the capture log instead of being processed twice.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request, HTTPException, Header
from pydantic import BaseModel, Field

from ..common.config import ParaBrainConfig, load_config, ensure_directories
from ..common.embedding_service import EmbeddingService, get_embedding_service
from ..common.llm_client import build_llm_client
from ..common.schemas import CaptureRequest, CaptureSource
from .classifier import CaptureClassifier
from .handlers import LineHandler, Message, TelegramAPIError, TelegramHandler
from .image_intake import ImageIntake, VisionAnalyzer
from .intake import CaptureIntake, IntakeDisposition, IntakeOutcome
from .pipeline import CapturePipeline
from .store import CaptureStore, JsonCaptureStore

logger = logging.getLogger("parabrain.capture.server")


# Global state
config: Optional[ParaBrainConfig] = None
store: Optional[CaptureStore] = None
pipeline: Optional[CapturePipeline] = None
image_intake: Optional[ImageIntake] = None
intake: Optional[CaptureIntake] = None
telegram_handler: Optional[TelegramHandler] = None
line_handler: Optional[LineHandler] = None
embedding_service: Optional[EmbeddingService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, store, pipeline, image_intake, intake, telegram_handler, line_handler
    global embedding_service

    logger.info("Starting up...")
    load_dotenv()
    ensure_directories()

    config = load_config()
    settings = config.capture

    store = JsonCaptureStore(Path(config.store.path))
    logger.info("Store: %s", config.store.path)

    embedding_service = get_embedding_service(
        model=config.embedding.model,
        fallback_model=config.embedding.fallback_model,
    )

    llm_client = build_llm_client(config.llm)
    if llm_client.is_available:
        logger.info("Classifier ready (%s / %s)", llm_client.provider, llm_client.model)
    else:
        logger.warning("Classifier unavailable (no %s API key); captures will get a fallback reply",
                       llm_client.provider)
    classifier = CaptureClassifier(llm_client, settings, max_tokens=config.llm.max_tokens)
    pipeline = CapturePipeline(store, settings, classifier, embedding_service=embedding_service)

    vision_client = build_llm_client(config.llm, model=config.llm.vision_model) if config.llm.vision_model else llm_client
    image_intake = ImageIntake(pipeline, VisionAnalyzer(vision_client, settings), store, settings)
    intake = CaptureIntake(store, settings)

    if config.telegram.bot_token:
        telegram_handler = TelegramHandler(
            bot_token=config.telegram.bot_token,
            settings=settings,
            webhook_secret=config.telegram.webhook_secret,
            allowed_user_id=config.telegram.allowed_user_id,
            allowed_chat_id=config.telegram.allowed_chat_id,
        )
        logger.info("Telegram webhook enabled")
    if config.line.channel_access_token:
        line_handler = LineHandler(
            channel_access_token=config.line.channel_access_token,
            settings=settings,
            channel_secret=config.line.channel_secret,
            allowed_user_id=config.line.allowed_user_id,
        )
        logger.info("LINE webhook enabled")

    logger.info("Ready to receive captures")

    yield

    logger.info("Shutting down...")
    for handler in (telegram_handler, line_handler):
        if handler is not None:
            await handler.aclose()


app = FastAPI(
    title="ParaBrain Capture",
    description="Personal capture pipeline for tasks, projects, resources and finance",
    version="0.1.0",
    lifespan=lifespan
)


# =============================================================================
# Request Models
# =============================================================================

class CaptureBody(BaseModel):
    """Text capture request"""
    message: str = ""
    source: str = "WEB"
    event_id: Optional[str] = Field(default=None, alias="eventId")
    timezone: Optional[str] = None


class ImageCaptureBody(BaseModel):
    """Image capture request"""
    image_base64: str = Field(default="", alias="imageBase64")
    mime_type: str = Field(default="image/jpeg", alias="mimeType")
    caption: str = ""
    source: str = "WEB"
    event_id: Optional[str] = Field(default=None, alias="eventId")
    timezone: Optional[str] = None


# =============================================================================
# Helpers
# =============================================================================

def _require_ready():
    if not pipeline or not intake or not image_intake:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")


def _check_capture_key(x_capture_key: Optional[str], authorization: Optional[str]) -> None:
    secret = config.server.capture_api_secret if config else ""
    if not secret:
        return
    provided = x_capture_key or ""
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]
    if not hmac.compare_digest(provided, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _intake_response(outcome: IntakeOutcome) -> dict:
    if outcome.disposition is IntakeDisposition.PROCESSED:
        return {**outcome.result.to_payload(), "logId": outcome.log_id}
    log = outcome.log
    return {
        "success": True,
        "duplicateEvent": True,
        "logId": outcome.log_id,
        "status": log.status.value if log else "PROCESSING",
        "actionType": log.action_type if log else None,
        "aiResponse": log.payload if log else None,
    }


async def _read_json(request: Request) -> dict:
    body = await request.body()
    try:
        data = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    return data


async def _telegram_reply(message: Message, text: str) -> None:
    """Send a Telegram reply; a failed send is logged, never turned into a 5xx"""
    try:
        await telegram_handler.send_reply(message, text)
    except TelegramAPIError as e:
        logger.warning("Telegram reply for event %s failed: %s", message.event_id, e)


async def process_chat_message(message: Message) -> IntakeOutcome:
    """Run a chat-channel message (text or photo) through the intake"""

    async def _run(log_id: str):
        if message.is_photo:
            photo = await telegram_handler.fetch_photo(message.photo_file_id)
            return await image_intake.process(
                photo.image_base64,
                mime_type=photo.mime_type,
                caption=message.caption,
                source=message.source,
                tz_name=config.capture.timezone,
                exclude_log_id=log_id,
                image_meta={
                    "telegramPhoto": True,
                    "filePath": photo.file_path,
                    "byteLength": photo.byte_length,
                },
            )
        return await pipeline.run(CaptureRequest(
            message=message.text,
            source=message.source,
            timezone=config.capture.timezone,
            exclude_log_id=log_id,
        ))

    return await intake.handle(message.source, message.event_id, message.log_message, _run)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "parabrain-capture",
        "initialized": pipeline is not None,
        "classifier_available": pipeline._classifier.is_available if pipeline else False,
        "telegram_enabled": telegram_handler is not None,
        "line_enabled": line_handler is not None,
    }


@app.post("/capture")
async def capture(
    body: CaptureBody,
    x_capture_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    """Capture one text message"""
    _check_capture_key(x_capture_key, authorization)
    _require_ready()

    message = body.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Missing 'message' in request body")

    source = CaptureSource.coerce(body.source)
    outcome = await intake.handle(
        source,
        body.event_id,
        message,
        lambda log_id: pipeline.run(CaptureRequest(
            message=message,
            source=source,
            timezone=body.timezone or config.capture.timezone,
            exclude_log_id=log_id,
        )),
    )
    return _intake_response(outcome)


@app.post("/capture/image")
async def capture_image(
    body: ImageCaptureBody,
    x_capture_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    """Capture one image, optionally with a caption"""
    _check_capture_key(x_capture_key, authorization)
    _require_ready()

    if not body.image_base64.strip():
        raise HTTPException(status_code=400, detail="Missing 'imageBase64' in request body")

    source = CaptureSource.coerce(body.source)
    caption = " ".join(body.caption.split())
    log_message = f"[IMAGE] {caption}" if caption else "[IMAGE] uploaded"
    outcome = await intake.handle(
        source,
        body.event_id,
        log_message,
        lambda log_id: image_intake.process(
            body.image_base64,
            mime_type=body.mime_type.strip() or "image/jpeg",
            caption=caption,
            source=source,
            tz_name=body.timezone or config.capture.timezone,
            exclude_log_id=log_id,
        ),
    )
    return _intake_response(outcome)


@app.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
):
    """
    Handle Telegram updates.

    Telegram retries non-2xx answers, so ignored updates still get 200.
    """
    if not telegram_handler:
        raise HTTPException(status_code=503, detail="Telegram handler not initialized")
    _require_ready()

    body = await request.body()
    if not telegram_handler.verify_signature(body, x_telegram_bot_api_secret_token or ""):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
    data = await _read_json(request)

    message = await telegram_handler.parse_event(data)
    if message is None:
        return {"success": True, "message": "Ignored unsupported update"}
    if not message.is_valid:
        return {"success": True, "message": "Ignored empty message update"}
    if not telegram_handler.is_allowed(message):
        logger.warning("Ignored Telegram update from user=%s chat=%s", message.user, message.channel)
        return {"success": True, "message": "Ignored unauthorized sender"}

    if message.is_id_command:
        await _telegram_reply(message, telegram_handler.id_reply(message))
        return {"success": True}

    try:
        outcome = await process_chat_message(message)
    except TelegramAPIError as e:
        logger.warning("Telegram photo fetch failed: %s", e)
        await _telegram_reply(message, "อ่านรูปไม่สำเร็จในรอบนี้ ลองส่งภาพใหม่อีกครั้งได้เลยครับ")
        return {"success": False, "error": str(e)}

    await _telegram_reply(message, outcome.reply_text)

    if outcome.is_duplicate_event:
        return {
            "success": True,
            "duplicateEvent": True,
            "message": "Still processing" if outcome.disposition is IntakeDisposition.IN_PROGRESS else "Duplicate replayed",
            "status": outcome.log.status.value if outcome.log else "PROCESSING",
        }
    return {
        "success": outcome.result.success,
        "operation": outcome.result.operation.value,
        "status": outcome.result.status.value,
        "recoveredFromStale": outcome.recovered_from_stale,
    }


@app.post("/line/webhook")
async def line_webhook(
    request: Request,
    x_line_signature: Optional[str] = Header(None),
):
    """Handle LINE webhook deliveries (possibly several events each)"""
    if not line_handler:
        raise HTTPException(status_code=503, detail="LINE handler not initialized")
    _require_ready()

    body = await request.body()
    if not line_handler.verify_signature(body, x_line_signature or ""):
        raise HTTPException(status_code=401, detail="Invalid signature")
    data = await _read_json(request)

    messages = await line_handler.parse_events(data)
    if not messages:
        return {"message": "No events"}

    processed = 0
    for message in messages:
        if message.is_id_command:
            await line_handler.send_reply(message, line_handler.id_reply(message))
            continue
        if not line_handler.should_process(message):
            logger.warning("Ignored LINE event from unauthorized user %s", message.user)
            continue
        outcome = await process_chat_message(message)
        await line_handler.send_reply(message, outcome.reply_text)
        processed += 1

    return {"success": True, "processed": processed}


@app.get("/stats")
async def get_stats():
    """Get capture statistics"""
    stats = {
        "service": "parabrain-capture",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if store:
        stats["capture_log"] = await store.log_status_counts()

    if config:
        settings = config.capture
        stats["pipeline"] = {
            "confirm_threshold": settings.confirm_threshold,
            "semantic_dedup_threshold": settings.semantic_dedup_threshold,
            "auto_capture_plan_enabled": settings.auto_capture_plan_enabled,
            "approval_gates_enabled": settings.approval_gates_enabled,
            "embedding_model": embedding_service.active_model if embedding_service else None,
        }

    return stats


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the capture server"""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    load_dotenv()
    config = load_config()
    port = config.server.port

    logger.info("Starting server on port %d", port)
    uvicorn.run(
        "parabrain.capture.server:app",
        host=config.server.host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
