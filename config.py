import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db_name: str = "FelanoCare"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    ai_temperature: float = 0.7
    session_ttl_hours: int = 24
    cors_origins: List[str] = ["*"]
    mcp_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            mongo_db_name=os.getenv("MONGO_DB_NAME", "FelanoCare"),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            ai_temperature=float(os.getenv("AI_TEMPERATURE", "0.7")),
            session_ttl_hours=int(os.getenv("SESSION_TTL_HOURS", "24")),
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
            mcp_enabled=_flag("MCP_ENABLED", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
