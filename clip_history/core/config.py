"""Environment-driven configuration."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables
load_dotenv()

SEARCH_RANKINGS = ("semantic", "hybrid", "keyword")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime settings for the clip history engine."""

    db_path: str = os.path.expanduser("~/.clip-history/clips.db")
    page_size: int = 50

    # Search
    similarity_threshold: float = 0.3
    search_ranking: str = "hybrid"
    hybrid_semantic_weight: float = 0.5
    hybrid_candidate_limit: int = 500

    # Embeddings
    embedding_model: str = "ollama/all-minilm"
    embedding_api_base: Optional[str] = "http://localhost:11434"
    embedding_api_key: Optional[str] = None
    embedding_dimensions: int = 384
    embedding_fallback: bool = True
    request_timeout: float = 30.0
    max_retries: int = 3

    # Cache
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    embedding_cache_ttl: int = 3600

    # System bridge
    paste_command: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and a .env file)."""
        ranking = os.getenv("SEARCH_RANKING", "hybrid").lower()
        if ranking not in SEARCH_RANKINGS:
            raise ValueError(
                f"SEARCH_RANKING must be one of {', '.join(SEARCH_RANKINGS)}, got {ranking!r}"
            )

        return cls(
            db_path=os.path.expanduser(
                os.getenv("CLIP_HISTORY_DB_PATH", "~/.clip-history/clips.db")
            ),
            page_size=int(os.getenv("CLIP_HISTORY_PAGE_SIZE", "50")),
            similarity_threshold=float(os.getenv("SIMILARITY_THRESHOLD", "0.3")),
            search_ranking=ranking,
            hybrid_semantic_weight=float(os.getenv("HYBRID_SEMANTIC_WEIGHT", "0.5")),
            hybrid_candidate_limit=int(os.getenv("HYBRID_CANDIDATE_LIMIT", "500")),
            embedding_model=os.getenv("EMBEDDING_MODEL", "ollama/all-minilm"),
            embedding_api_base=os.getenv(
                "EMBEDDING_API_BASE",
                os.getenv("OLLAMA_API_BASE", "http://localhost:11434"),
            ),
            embedding_api_key=os.getenv("EMBEDDING_API_KEY"),
            embedding_dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "384")),
            embedding_fallback=_env_bool("EMBEDDING_FALLBACK", "true"),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "30")),
            max_retries=int(os.getenv("MAX_RETRIES", "3")),
            cache_backend=os.getenv("CACHE_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            embedding_cache_ttl=int(os.getenv("EMBEDDING_CACHE_TTL", "3600")),
            paste_command=os.getenv("PASTE_COMMAND") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
