"""
Credential broker service.

Keeps the long-lived OpenAI API key on the server and hands clients a
short-lived Realtime client secret they can use for one negotiation.
"""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI, APIConnectionError, APIStatusError

from voice_roleplay.config import get_settings
from voice_roleplay.models import ClientSecret, ClientSecretResponse, SessionTemplate

logger = logging.getLogger(__name__)


app = FastAPI(
    title="Realtime Credential Broker",
    description="Issues short-lived OpenAI Realtime client secrets",
    version="1.0.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/session", response_model=ClientSecretResponse)
async def create_session(request: SessionTemplate = SessionTemplate()):
    """Create a Realtime session and return its ephemeral client secret."""
    settings = get_settings()

    if not settings.openai_api_key:
        logger.error("OPENAI_API_KEY is not configured")
        raise HTTPException(status_code=500, detail="OpenAI API key not configured")

    try:
        async with AsyncOpenAI(api_key=settings.openai_api_key) as client:
            session = await client.beta.realtime.sessions.create(
                model=request.model or settings.realtime_model,
                voice=request.voice or settings.voice,
            )
    except APIStatusError as e:
        logger.error("OpenAI API error: %s - %s", e.status_code, e.message)
        raise HTTPException(status_code=e.status_code, detail="Failed to create session")
    except APIConnectionError as e:
        logger.error("OpenAI API unreachable: %s", e)
        raise HTTPException(status_code=502, detail="Failed to create session")

    secret = getattr(session, "client_secret", None)
    value = getattr(secret, "value", None)
    expires_at = getattr(secret, "expires_at", None)
    if not value or not expires_at:
        logger.error("Invalid response structure: %s", session)
        raise HTTPException(status_code=500, detail="Invalid session response")

    logger.info("Issued client secret expiring at %s", expires_at)
    return ClientSecretResponse(
        client_secret=ClientSecret(value=value, expires_at=expires_at)
    )
