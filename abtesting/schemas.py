
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from callers are taken to be UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExperimentStatus(str, Enum):
    draft = "draft"
    running = "running"
    paused = "paused"
    completed = "completed"
    archived = "archived"


class EventType(str, Enum):
    exposure = "exposure"
    conversion = "conversion"
    custom = "custom"


class GuardrailOperator(str, Enum):
    gt = "gt"
    lt = "lt"
    eq = "eq"


class Recommendation(str, Enum):
    implement_winner = "implement_winner"
    continue_test = "continue_test"
    inconclusive = "inconclusive"


class Effect(str, Enum):
    positive = "positive"
    negative = "negative"
    neutral = "neutral"


# Variant config values stay scalar so overrides can be checked statically
ConfigValue = Union[bool, int, float, str]


# Experiment definition schemas
class Variant(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    weight: float = Field(..., ge=0, le=100)
    config: Dict[str, ConfigValue] = Field(default_factory=dict)
    is_control: bool = False


class TargetAudience(BaseModel):
    percentage: float = Field(100.0, ge=0, le=100)
    segments: List[str] = Field(default_factory=list)
    exclude_segments: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)


class Guardrail(BaseModel):
    metric: str
    operator: GuardrailOperator
    threshold: float


class MetricsConfig(BaseModel):
    primary: str
    secondary: List[str] = Field(default_factory=list)
    guardrails: List[Guardrail] = Field(default_factory=list)


class StatisticalConfig(BaseModel):
    significance_level: float = Field(0.05, gt=0, lt=1)
    power: float = Field(0.8, gt=0, lt=1)
    minimum_detectable_effect: float = Field(0.1, gt=0)
    # derived at start, never taken from the caller
    minimum_sample_size: Optional[int] = None


class ExperimentCreate(BaseModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    variants: List[Variant]
    metrics: MetricsConfig
    statistical_config: StatisticalConfig = Field(default_factory=StatisticalConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Results schemas
class MetricResult(BaseModel):
    value: float = 0.0
    conversions: int = 0
    exposures: int = 0
    standard_error: float = 0.0
    ci_lower: float = 0.0
    ci_upper: float = 0.0
    confidence: float = 0.0
    # None for the control arm (nothing to compare against)
    p_value: Optional[float] = None
    improvement: float = 0.0
    significantly_different: bool = False


class VariantResult(BaseModel):
    variant_id: str
    variant_name: str
    is_control: bool
    sample_size: int
    metrics: Dict[str, MetricResult]


class Winner(BaseModel):
    variant_id: str
    confidence: float
    improvement: float
    metric: str


class StatisticalSummary(BaseModel):
    is_statistically_significant: bool
    confidence_level: float
    effect: Effect
    recommendation: Recommendation


class Results(BaseModel):
    test_id: str
    status: ExperimentStatus
    computed_at: datetime
    duration: int
    participant_count: int
    minimum_sample_size: Optional[int] = None
    variant_results: List[VariantResult]
    winner: Optional[Winner] = None
    recommendations: List[str] = Field(default_factory=list)
    statistical_summary: StatisticalSummary


class Experiment(ExperimentCreate):
    """Stored experiment: the validated definition plus lifecycle state"""
    id: str
    status: ExperimentStatus = ExperimentStatus.draft
    created_at: datetime = Field(default_factory=utcnow)
    stop_reason: Optional[str] = None
    results: Optional[Results] = None

    def control_variant(self) -> Variant:
        return next(v for v in self.variants if v.is_control)

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        return next((v for v in self.variants if v.id == variant_id), None)

    def tracked_metrics(self) -> List[str]:
        """Primary + secondary metric names, in order, without duplicates"""
        names = [self.metrics.primary] + list(self.metrics.secondary)
        return list(dict.fromkeys(names))


# Participants and events
class Conversion(BaseModel):
    metric: str
    value: float
    timestamp: datetime


class Participant(BaseModel):
    user_id: str
    test_id: str
    variant_id: str
    assigned_at: datetime
    first_exposure: Optional[datetime] = None
    conversions: List[Conversion] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    id: str
    test_id: str
    variant_id: str
    user_id: str
    event_type: EventType
    event_name: str
    value: float = 1.0
    timestamp: datetime
    properties: Dict[str, Any] = Field(default_factory=dict)


class Snapshot(BaseModel):
    """The whole persisted state of one deployment (load/save unit)"""
    tests: Dict[str, Experiment] = Field(default_factory=dict)
    participants: Dict[str, List[Participant]] = Field(default_factory=dict)
    events: List[Event] = Field(default_factory=list)
    # user_id -> test_id -> variant_id
    assignments: Dict[str, Dict[str, str]] = Field(default_factory=dict)


# API schemas
class StopRequest(BaseModel):
    reason: Optional[str] = None


class AssignmentResponse(BaseModel):
    experiment_id: str
    user_id: str
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    config: Dict[str, ConfigValue] = Field(default_factory=dict)
    in_test: bool


class EventCreate(BaseModel):
    user_id: str
    experiment_id: str
    # NOTE: we accept "event_name" or the shorter "name" in JSON
    event_name: str = Field(..., alias="name")
    value: float = 1.0
    timestamp: Optional[datetime] = None
    properties: Optional[Dict[str, Any]] = None

    class Config:
        # Allow both "name" and "event_name"
        populate_by_name = True


class TrackResponse(BaseModel):
    recorded: bool
    event_id: Optional[str] = None
    event_type: Optional[EventType] = None
    variant_id: Optional[str] = None
