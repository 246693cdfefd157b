"""
Pydantic model for the run configuration.
A single immutable value is built per invocation and handed to every component.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mdown.models.catalog import QualityTier

# Above this many concurrent page requests the image servers start refusing us.
PRACTICAL_CONCURRENCY_CEILING = 60

DEFAULT_MAX_CONSECUTIVE = 40

LOCK_FILENAME = ".mdown.lock"


class RunConfig(BaseModel):
    """A validated, frozen configuration for one download run."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    # Target selection
    url: str = ""
    search: str = ""
    title: str = ""
    folder: str = "name"

    # Chapter filters
    lang: str = "en"
    volume: str = "*"
    chapter: str = "*"
    offset: int = 0
    database_offset: int = 0
    unsorted: bool = False

    # Download behaviour
    saver: bool = False
    stat: bool = False
    force: bool = False
    max_consecutive: int = DEFAULT_MAX_CONSECUTIVE
    max_attempts: int = 3
    backup: bool = True

    # Process coordination
    force_delete: bool = False
    shared_mode: bool = False
    cwd: Path = Field(default_factory=lambda: Path("."))

    @field_validator("max_consecutive")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures the page concurrency budget is usable."""
        if v < 1:
            raise ValueError("max_consecutive must be at least 1.")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("max_attempts must be between 1 and 10.")
        return v

    @field_validator("offset", "database_offset")
    @classmethod
    def validate_offsets(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Offsets cannot be negative.")
        return v

    @field_validator("lang")
    @classmethod
    def validate_lang(cls, v: str) -> str:
        if not v:
            raise ValueError("Language cannot be empty. Use '*' for any language.")
        return v

    @field_validator("folder")
    @classmethod
    def validate_folder(cls, v: str) -> str:
        if ".." in v or v.startswith(("/", "\\")):
            raise ValueError("Folder cannot contain '..' or be an absolute path.")
        return v or "name"

    @model_validator(mode="after")
    def validate_target(self) -> "RunConfig":
        """Checks for conflicting target options."""
        if self.url and self.search:
            raise ValueError("Use either a URL/ID or --search, not both.")
        return self

    @property
    def tier(self) -> QualityTier:
        return QualityTier.SAVER if self.saver else QualityTier.NORMAL

    @property
    def cache_dir(self) -> Path:
        return self.cwd / ".cache"

    @property
    def lock_path(self) -> Path:
        return self.cwd / LOCK_FILENAME
