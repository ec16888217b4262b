import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

MODELS_DIR_ENV = "GPT2_SESSION_MODELS_DIR"


def default_models_dir(environ: Mapping[str, str] = os.environ) -> Path:
    data_home = environ.get("XDG_DATA_HOME")
    base = Path(data_home) if data_home else Path.home() / ".local" / "share"
    return base / "gpt2-session" / "models"


@dataclass
class LoaderConfig:
    models_dir: Path = field(default_factory=default_models_dir)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "LoaderConfig":
        models_dir = environ.get(MODELS_DIR_ENV)
        return cls(models_dir=Path(models_dir) if models_dir else default_models_dir(environ))


@dataclass
class SessionConfig:
    architecture: str = "gpt2-117M"
    quantization: str | None = None
    prediction_tokens: int = 10
    stream_batch_size: int = 2
    max_cache_tokens: int | None = None
    retain_cursor: bool = True
    top_k: int = 500
    top_p: float = 1.0
    seed: int | None = None

    def __post_init__(self):
        if self.prediction_tokens < 1:
            raise ValueError(f"prediction_tokens must be positive, got {self.prediction_tokens}")
        if self.stream_batch_size < 1:
            raise ValueError(f"stream_batch_size must be positive, got {self.stream_batch_size}")
