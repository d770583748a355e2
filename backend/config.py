"""Runtime settings for the noteloom backend.

Values come from ``NOTELOOM_*`` environment variables and fall back to the
defaults below. Settings are read once at startup and handed to ``AppState``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from decay import DECAY_PRESETS, DEFAULT_LAMBDA

_ENV_PREFIX = "NOTELOOM_"

_ENV_FIELDS: Dict[str, str] = {
    "DATA_DIR": "data_dir",
    "EMBED_MODEL": "embed_model",
    "MODEL_VERSION": "model_version",
    "INDEX_MAX_ELEMENTS": "index_max_elements",
    "INDEX_M": "index_m",
    "INDEX_EF_CONSTRUCTION": "index_ef_construction",
    "INDEX_EF_SEARCH": "index_ef_search",
    "DECAY_LAMBDA": "decay_lambda",
    "KEYWORD_WEIGHT": "keyword_weight",
    "SEMANTIC_WEIGHT": "semantic_weight",
    "DEFAULT_K": "default_k",
    "KMEANS_SEED": "kmeans_seed",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
}


def _default_data_dir() -> Path:
    return Path(__file__).resolve().parent / "storage"


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data_dir: Path = Field(default_factory=_default_data_dir)
    embed_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    model_version: str = "minilm-v1"
    embedding_dim: int = 384

    index_max_elements: int = Field(default=100_000, gt=0)
    index_m: int = Field(default=16, gt=0)
    index_ef_construction: int = Field(default=200, gt=0)
    index_ef_search: int = Field(default=50, gt=0)

    decay_lambda: float = Field(default=DEFAULT_LAMBDA, ge=0)
    keyword_weight: float = Field(default=0.6, ge=0)
    semantic_weight: float = Field(default=0.4, ge=0)

    default_k: int = Field(default=8, ge=2, le=50)
    kmeans_seed: Optional[int] = 42

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("decay_lambda", mode="before")
    @classmethod
    def _resolve_decay_preset(cls, value):
        if isinstance(value, str) and value.strip().lower() in DECAY_PRESETS:
            return DECAY_PRESETS[value.strip().lower()]
        return value

    @property
    def notes_dir(self) -> Path:
        return self.data_dir / "notes"

    @property
    def tables_dir(self) -> Path:
        return self.data_dir / "tables"


def load_settings(environ: Optional[Dict[str, str]] = None, **overrides) -> Settings:
    """Build ``Settings`` from the environment, with keyword overrides winning."""
    env = os.environ if environ is None else environ
    values = {}
    for suffix, field_name in _ENV_FIELDS.items():
        raw = env.get(_ENV_PREFIX + suffix)
        if raw is not None and raw != "":
            values[field_name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
