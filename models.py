from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from constants import DEFINITION_STATUS_ACTIVE


@dataclass(frozen=True)
class TrackingDefinition:
    """A tracking URL: random identifier -> destination + campaign dimensions."""
    id: str
    destination: Optional[str]
    utm_source: str
    utm_medium: str
    utm_campaign: str
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    status: str = DEFINITION_STATUS_ACTIVE
    created_at: Optional[datetime] = None

    ALLOWED_COLUMNS = (
        'id', 'destination', 'utm_source', 'utm_medium', 'utm_campaign',
        'utm_content', 'utm_term', 'status', 'created_at'
    )

    @property
    def is_active(self):
        return self.status == DEFINITION_STATUS_ACTIVE

    def campaign(self):
        return {
            "utm_source": self.utm_source or "",
            "utm_medium": self.utm_medium or "",
            "utm_campaign": self.utm_campaign or "",
            "utm_content": self.utm_content or "",
            "utm_term": self.utm_term or "",
        }

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        return cls(**{k: data[k] for k in cls.ALLOWED_COLUMNS if k in data})


@dataclass
class ClickRecord:
    tracking_id: str
    clicked_at: datetime
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_id: Optional[str] = None
    utm_source_platform: Optional[str] = None
    session_ref: Optional[str] = None
    id: Optional[int] = None


@dataclass
class QueueJob:
    id: int
    reporter: str
    payload: dict
    status: str
    attempts: int = 0
    label: Optional[str] = None
    attempts_per_round: Optional[int] = None
    retry_delay: Optional[int] = None
    max_rounds: Optional[int] = None
    round_delay: Optional[int] = None
    retry_after: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None

    def retry_params(self, defaults):
        """Per-job retry parameters; NULL columns fall back to the global defaults."""
        return {
            key: getattr(self, key) if getattr(self, key) is not None else defaults[key]
            for key in ("attempts_per_round", "retry_delay", "max_rounds", "round_delay")
        }

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        known = {f for f in cls.__dataclass_fields__}
        job = cls(**{k: v for k, v in data.items() if k in known})
        if job.payload is None:
            job.payload = {}
        return job


@dataclass
class AttributionResult:
    """Outcome of one attributed conversion."""
    attributions: dict
    conversion_ids: list = field(default_factory=list)
    job_ids: list = field(default_factory=list)
    # Cookie instructions (dedup marker) for the web layer to apply
    cookies: list = field(default_factory=list)
