# =============================================================================
# RealtyVoice Agent - Main Entry Point
# =============================================================================
"""
FastAPI server hosting the services the voice agent talks to, plus the
command-line interface.

Endpoints:
    POST /api/ai/speech        raw audio -> {"transcript"}
    POST /api/ai/receptionist  {message, history} -> structured reply
    POST /api/ai/tts           {text} -> audio/wav
    POST /api/leads            create a lead
    GET  /api/leads            list leads
"""

import os
import sys
import asyncio
import logging
from pathlib import Path
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

# Load environment variables
load_dotenv()

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import AgentSettings, ServiceSettings
from models import APIResponse, LeadRequest, ReceptionistRequest, SpeechRequest
from core import (
    Catalog,
    LLMEngine,
    LeadDatabase,
    LocalSynthesizer,
    Receptionist,
    ReasoningClient,
    WhisperEngine,
)
from core.errors import ReasoningFailed, SynthesisFailed, TranscriptionFailed
from core.rate_limit import RECEPTIONIST_LIMIT, TTS_LIMIT, RateLimit, RateLimiter
from core.receptionist import ERROR_MESSAGE

# Configure logging
console = Console()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, rich_tracebacks=True)]
)

logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifecycle
# =============================================================================

# Global instances
_settings: Optional[ServiceSettings] = None
_llm_engine: Optional[LLMEngine] = None
_receptionist: Optional[Receptionist] = None
_whisper: Optional[WhisperEngine] = None
_synthesizer: Optional[LocalSynthesizer] = None
_database: Optional[LeadDatabase] = None
_rate_limiter = RateLimiter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle manager."""
    global _settings, _llm_engine, _receptionist, _whisper, _synthesizer, _database

    logger.info("Starting RealtyVoice services...")
    _settings = ServiceSettings.from_env()

    _llm_engine = LLMEngine(
        ollama_base_url=_settings.ollama_base_url,
        ollama_model=_settings.ollama_model,
        timeout_seconds=_settings.llm_timeout_seconds,
        enable_fallback=_settings.enable_gemini_fallback,
        gemini_api_key=_settings.gemini_api_key,
    )
    await _llm_engine.initialize()

    _receptionist = Receptionist(_llm_engine, Catalog.load(_settings.catalog_path))
    _whisper = WhisperEngine(model_name=_settings.whisper_model)
    _synthesizer = LocalSynthesizer()
    _database = LeadDatabase(_settings.database_url)

    logger.info("RealtyVoice services ready!")

    yield

    logger.info("Shutting down...")
    if _whisper:
        await _whisper.close()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="RealtyVoice Agent",
    description="Speech, receptionist, synthesis and lead services for the RealtyVoice agent",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} not ready")
    return component


def _max_tts_chars() -> int:
    return _settings.max_tts_chars if _settings else 2000


def _client_id(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _allowed(request: Request, limit: RateLimit) -> bool:
    return _rate_limiter.check(limit, _client_id(request))


# =============================================================================
# API Endpoints
# =============================================================================

@app.get("/", response_class=JSONResponse)
async def root():
    """Root endpoint with API info."""
    return {
        "name": "RealtyVoice Agent",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "speech": "/api/ai/speech - POST raw audio for transcription",
            "receptionist": "/api/ai/receptionist - POST message and history",
            "tts": "/api/ai/tts - POST text for speech audio",
            "leads": "/api/leads - POST/GET leads",
            "status": "/api/status - GET system status"
        }
    }


@app.get("/api/status")
async def get_status():
    """Get system status and component availability."""
    return {
        "status": "operational",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "llm_engine": _llm_engine.get_status() if _llm_engine else None,
            "whisper": _whisper.get_model_info() if _whisper else None,
            "catalog": {
                "properties": len(_receptionist.catalog.properties) if _receptionist else 0,
                "marketplace_items": len(_receptionist.catalog.marketplace_items) if _receptionist else 0,
            },
            "leads": _database.get_leads_count() if _database else None,
        }
    }


@app.post("/api/ai/speech")
async def transcribe_speech(request: Request):
    """Transcribe a raw audio body; the codec comes from Content-Type."""
    whisper = _require(_whisper, "Speech service")
    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="No audio data received")

    content_type = request.headers.get("content-type", "audio/wav")
    try:
        transcript = await whisper.transcribe(payload, content_type)
    except TranscriptionFailed as e:
        logger.error(f"Speech recognition failed: {e}")
        raise HTTPException(status_code=502, detail="Speech recognition failed")
    return {"transcript": transcript}


@app.post("/api/ai/receptionist")
async def receptionist(body: ReceptionistRequest, request: Request):
    """Structured reply for one user message."""
    if not _allowed(request, RECEPTIONIST_LIMIT):
        return JSONResponse(status_code=429, content={
            "message": "You're sending messages too quickly. Please wait a moment.",
            "intent": "rate_limited",
            "listings": [],
            "marketplaceItems": [],
        })
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    service = _require(_receptionist, "Receptionist")
    try:
        reply = await service.reply(body.message, body.history)
    except Exception:
        logger.exception("Receptionist API error")
        return {"message": ERROR_MESSAGE, "intent": "error", "listings": [], "marketplaceItems": []}
    return reply.model_dump(by_alias=True, exclude_none=True)


@app.post("/api/ai/tts")
async def text_to_speech(body: SpeechRequest, request: Request):
    """Synthesize speech as WAV."""
    if not _allowed(request, TTS_LIMIT):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    if not body.text.strip() or len(body.text) > _max_tts_chars():
        raise HTTPException(status_code=400, detail=f"Invalid text (max {_max_tts_chars()} chars)")

    synthesizer = _require(_synthesizer, "Speech synthesis")
    try:
        audio = await synthesizer.synthesize(body.text)
    except SynthesisFailed as e:
        logger.error(f"TTS generation failed: {e}")
        raise HTTPException(status_code=502, detail="TTS generation failed")
    return Response(content=audio, media_type="audio/wav")


@app.post("/api/leads", status_code=201, response_model=APIResponse)
async def create_lead(lead_data: LeadRequest):
    """Store a lead for an agent or seller."""
    if not lead_data.agent_id or not (lead_data.message or "").strip():
        raise HTTPException(status_code=400, detail="Agent ID and message are required")

    db = _require(_database, "Lead store")
    lead = db.create_lead(lead_data.model_dump())
    return APIResponse(success=True, message="Lead saved successfully", data=lead)


@app.get("/api/leads")
async def get_leads(
    agent_id: Optional[str] = Query(None, description="Only leads for this agent"),
    limit: int = Query(100, ge=1, le=500, description="Max leads to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination")
):
    """List leads, newest first."""
    db = _require(_database, "Lead store")
    return {
        "leads": db.get_all_leads(agent_id=agent_id, limit=limit, offset=offset),
        "total": db.get_leads_count(agent_id=agent_id),
        "limit": limit,
        "offset": offset
    }


# =============================================================================
# CLI Functions
# =============================================================================

async def run_talk():
    """Push-to-talk conversation in the terminal."""
    from agent import run_voice_cli
    await run_voice_cli(console=console)


async def run_ask(text: str):
    """Send one typed question to the receptionist and print the reply."""
    settings = AgentSettings.from_env()
    client = ReasoningClient(base_url=settings.api_base_url, timeout_seconds=settings.http_timeout_seconds)
    try:
        reply = await client.ask(text, [])
    except ReasoningFailed as e:
        console.print(f"[red]Request failed:[/red] {e}")
        return
    finally:
        await client.close()

    console.print(Panel(reply.message, title=f"Agent ({reply.intent or 'reply'})", border_style="blue"))
    if reply.all_items:
        table = Table()
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("City")
        table.add_column("Price", justify="right")
        for item in reply.all_items:
            table.add_row(item.id, item.title, item.city or "-", f"{item.currency or 'AED'} {item.display_price:,.0f}")
        console.print(table)


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="RealtyVoice Agent - voice receptionist for property listings"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    server_parser = subparsers.add_parser("serve", help="Start API server")
    server_parser.add_argument("--host", default="0.0.0.0", help="Host to bind")
    server_parser.add_argument("--port", type=int, default=9876, help="Port to bind")
    server_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    subparsers.add_parser("talk", help="Talk to the agent from the terminal")

    ask_parser = subparsers.add_parser("ask", help="Ask one typed question")
    ask_parser.add_argument("text", help="Question to send")

    args = parser.parse_args()

    if args.command == "serve":
        console.print(Panel.fit(
            "[bold blue]RealtyVoice Agent[/bold blue]\n"
            f"[dim]Starting server on {args.host}:{args.port}[/dim]",
            border_style="blue"
        ))
        uvicorn.run("main:app", host=args.host, port=args.port, reload=args.reload)

    elif args.command == "talk":
        asyncio.run(run_talk())

    elif args.command == "ask":
        asyncio.run(run_ask(args.text))

    else:
        console.print(Panel.fit(
            "[bold blue]RealtyVoice Agent[/bold blue]\n\n"
            "[yellow]Usage:[/yellow]\n"
            "  python main.py serve      - Start API server\n"
            "  python main.py talk       - Voice conversation in the terminal\n"
            "  python main.py ask TEXT   - One typed question",
            border_style="blue"
        ))


if __name__ == "__main__":
    main()
