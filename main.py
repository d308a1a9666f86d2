import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings
from coach_engine.config import load_engine_config
from coach_engine.router import router as coach_router
from coach_engine.services import build_services

logging.basicConfig(
    level=getattr(logging, Settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine_config = load_engine_config(Settings)

# FastAPI application
app = FastAPI(
    title="Coach Engine",
    description="Conversation orchestration for an AI health coach: context, prompts, caching, LLM calls and proactive triggers.",
    version="1.0.0"
)

# CORS (frontend)
origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:8000",
    "http://localhost:8081",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.coach = build_services(engine_config)
app.include_router(coach_router)


@app.on_event("startup")
def start_services():
    app.state.coach.start()


@app.on_event("shutdown")
def stop_services():
    app.state.coach.stop()


@app.get("/")
async def health_check():
    """
    Service health check
    """
    return {
        "status": "healthy",
        "service": "Coach Engine",
        "version": "1.0.0",
        "provider": engine_config.llm.provider,
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
