"""User-editable settings kinds, each independently defaulted."""

from pydantic import BaseModel, ConfigDict, Field

from mailtriage.domain.types import JudgeBackend, ReadFilter


class GeneralSettings(BaseModel):
    """Presentation preferences passed through to whatever front end is in use."""

    model_config = ConfigDict(frozen=True)

    language: str = "en"
    theme: str = "system"


class FetchSettings(BaseModel):
    """How a sampling fetch is windowed and bounded.

    ``request_timeout_seconds`` applies to each provider call; ``0`` means
    unbounded.
    """

    model_config = ConfigDict(frozen=True)

    sampling_days: int = Field(default=30, ge=1)
    max_fetch_count: int = Field(default=1000, ge=1)
    read_filter: ReadFilter = ReadFilter.ALL
    request_timeout_seconds: float = Field(default=30.0, ge=0)


class DeleteSettings(BaseModel):
    """Exclusion policy applied to every trash operation."""

    model_config = ConfigDict(frozen=True)

    exclude_important: bool = True
    exclude_starred: bool = True

    @property
    def excludes_any(self) -> bool:
        return self.exclude_important or self.exclude_starred


class OllamaSettings(BaseModel):
    """Local inference server used by the AI judgment pipeline."""

    model_config = ConfigDict(frozen=True)

    host: str = "http://localhost:11434"
    model: str = ""
    timeout_seconds: float = Field(default=60.0, ge=0)
    concurrency: int = Field(default=2, ge=1)


class AIJudgmentSettings(BaseModel):
    """What the AI judgment pipeline asks and which backend answers."""

    model_config = ConfigDict(frozen=True)

    backend: JudgeBackend = JudgeBackend.OLLAMA
    allowed_languages: list[str] = Field(default_factory=list)
    marketing_threshold: int = Field(default=7, ge=0, le=10)
    spam_threshold: int = Field(default=7, ge=0, le=10)


class GcpSettings(BaseModel):
    """OAuth client registered for the Gmail provider."""

    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    client_secret: str = Field(default="", repr=False)
    project_id: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)
