from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]

DEFAULT_PIPELINE = "timescaledb-vector"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PGEXT_IMAGE_",
        env_file=".env",
        extra="ignore",
    )

    work_root: Path = Field(default=Path("_work"))
    output_root: Path = Field(default=Path("_images"))
    run_root: Path = Field(default=Path("_runs"))
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    # None means one worker per build stage.
    max_parallel: Optional[int] = Field(default=None, ge=1)
    keep_stage_dirs: bool = Field(default=False)

    # Base environment reference -> local directory seeded into a stage root.
    base_roots: dict[str, Path] = Field(default_factory=dict)

    # Host directories bound read-only into every stage sandbox.
    sandbox_host_binds: list[str] = Field(default_factory=list)
    sandbox_bwrap: str = Field(default="bwrap")


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
