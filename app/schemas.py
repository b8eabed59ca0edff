import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field

RiskLevel = Literal["low", "medium", "high"]
ReportStatus = Literal["draft", "finalized"]

RISK_LEVELS = ("low", "medium", "high")
REPORT_STATUSES = ("draft", "finalized")

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _default_low(v: Any) -> Any:
    return "low" if v is None or v == "" else v


def _to_str(v: Any) -> Any:
    return str(v) if isinstance(v, int) else v


BlankIsNone = BeforeValidator(_blank_to_none)
DefaultLow = BeforeValidator(_default_low)


class _InModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# --- Auth ---
class RegisterRequest(_InModel):
    email: str = Field(pattern=_EMAIL_PATTERN)
    password: str = Field(min_length=6)
    name: str = Field(min_length=2)


class LoginRequest(_InModel):
    email: str = Field(pattern=_EMAIL_PATTERN)
    password: str = Field(min_length=1)


class RefreshRequest(_InModel):
    refresh_token: str = Field(alias="refreshToken", min_length=1)


class User(BaseModel):
    id: str; email: str; name: str
    model_config = ConfigDict(from_attributes=True)


class RegisterResponse(BaseModel):
    message: str
    user: User


class LoginResponse(BaseModel):
    message: str
    user: User
    token: str
    refresh_token: str = Field(alias="refreshToken")
    model_config = ConfigDict(populate_by_name=True)


class MessageResponse(BaseModel):
    message: str


# --- Companies ---
class CompanyCreate(_InModel):
    name: str = Field(min_length=2, max_length=100)
    cuit: str = Field(pattern=r"^[0-9-]+$")
    address: str = Field(min_length=5)
    industry: str = Field(min_length=1)


class CompanyUpdate(_InModel):
    """Absent or empty fields are left unchanged."""
    name: Annotated[Optional[str], BlankIsNone] = Field(None, min_length=2, max_length=100)
    cuit: Annotated[Optional[str], BlankIsNone] = Field(None, pattern=r"^[0-9-]+$")
    address: Annotated[Optional[str], BlankIsNone] = Field(None, min_length=5)
    industry: Annotated[Optional[str], BlankIsNone] = None

    def to_patch(self) -> dict:
        return self.model_dump(exclude_none=True)


class Company(BaseModel):
    id: str
    name: str
    cuit: str
    address: str
    industry: str
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    model_config = ConfigDict(from_attributes=True)


# --- Observations ---
class ObservationCreate(_InModel):
    observation: str = Field(min_length=1)
    risk_level: Annotated[RiskLevel, DefaultLow] = Field("low", alias="riskLevel")
    image_url: Annotated[Optional[str], BlankIsNone] = Field(None, alias="imageUrl")


class Observation(BaseModel):
    id: str
    report_id: str
    observation: str
    risk_level: RiskLevel
    image_url: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ExistingEntry(_InModel):
    """Edit of an observation the client believes is already stored.

    ``observation`` and ``risk_level`` fall back to the stored values when omitted
    or blank. ``image_url`` omitted or ``""`` keeps the stored image, an explicit
    ``null`` clears it.
    """
    kind: Literal["existing"] = "existing"
    id: Annotated[str, BeforeValidator(_to_str)]
    observation: Annotated[Optional[str], BlankIsNone] = None
    risk_level: Annotated[Optional[RiskLevel], BlankIsNone] = Field(None, alias="riskLevel")
    image_url: Optional[str] = Field(None, alias="imageUrl")
    new_image: bool = Field(False, alias="newImage")
    temp_id: Annotated[Optional[str], BlankIsNone, BeforeValidator(_to_str)] = Field(None, alias="tempId")

    @property
    def clears_image(self) -> bool:
        return "image_url" in self.model_fields_set and self.image_url is None

    @property
    def supplied_image_url(self) -> Optional[str]:
        return self.image_url or None


class NewEntry(_InModel):
    kind: Literal["new"] = "new"
    temp_id: Annotated[Optional[str], BlankIsNone, BeforeValidator(_to_str)] = Field(None, alias="tempId")
    observation: str = Field(min_length=1)
    risk_level: Annotated[RiskLevel, DefaultLow] = Field("low", alias="riskLevel")
    image_url: Annotated[Optional[str], BlankIsNone] = Field(None, alias="imageUrl")


EditEntry = Union[ExistingEntry, NewEntry]


def parse_edit_entry(raw: Any) -> EditEntry:
    if not isinstance(raw, dict):
        raise ValueError("each observation must be an object")
    if raw.get("id") not in (None, ""):
        return ExistingEntry.model_validate(raw)
    return NewEntry.model_validate({k: v for k, v in raw.items() if k != "id"})


# --- Reports ---
class ReportCreate(_InModel):
    company_id: str = Field(alias="companyId", min_length=1)
    date: datetime.date
    contact: Annotated[Optional[str], BlankIsNone] = None
    description: str = Field(min_length=10)
    verification: Annotated[Optional[str], BlankIsNone] = None
    recommendations: Annotated[Optional[str], BlankIsNone] = None
    signature: Annotated[Optional[str], BlankIsNone] = None
    visit_confirmation: Annotated[bool, BeforeValidator(lambda v: False if v in (None, "") else v)] = Field(
        False, alias="visitConfirmation"
    )
    status: Annotated[ReportStatus, BeforeValidator(lambda v: "draft" if v in (None, "") else v)] = "draft"
    observations: List[ObservationCreate] = Field(default_factory=list)

    def report_row(self, user_id: str) -> dict:
        return {
            "company_id": self.company_id,
            "user_id": user_id,
            "date": self.date,
            "contact": self.contact or "",
            "description": self.description,
            "verification": self.verification or "",
            "recommendations": self.recommendations or "",
            "signature": self.signature or "",
            "visit_confirmation": self.visit_confirmation,
            "status": self.status,
        }


class ReportUpdate(_InModel):
    date: Annotated[Optional[datetime.date], BlankIsNone] = None
    contact: Optional[str] = None
    description: Annotated[Optional[str], BlankIsNone] = Field(None, min_length=10)
    verification: Optional[str] = None
    recommendations: Optional[str] = None
    signature: Optional[str] = None
    visit_confirmation: Annotated[Optional[bool], BlankIsNone] = Field(None, alias="visitConfirmation")
    status: Annotated[Optional[ReportStatus], BlankIsNone] = None
    observations: List[dict] = Field(default_factory=list)
    deletion_ids: List[Annotated[str, BeforeValidator(_to_str)]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("observationsToDelete", "deletionIds", "deletion_ids"),
    )

    def to_patch(self) -> dict:
        patch = {}
        for name in ("date", "description", "status", "visit_confirmation"):
            value = getattr(self, name)
            if value is not None:
                patch[name] = value
        # free-text fields may be blanked explicitly
        for name in ("contact", "verification", "recommendations", "signature"):
            if name in self.model_fields_set:
                patch[name] = getattr(self, name) or ""
        return patch

    def edit_entries(self) -> List[EditEntry]:
        return [parse_edit_entry(raw) for raw in self.observations]


class Report(BaseModel):
    id: str
    company_id: str
    user_id: str
    date: datetime.date
    contact: Optional[str] = ""
    description: str
    verification: Optional[str] = ""
    recommendations: Optional[str] = ""
    signature: Optional[str] = ""
    visit_confirmation: bool = False
    status: ReportStatus
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    company: Optional[Company] = None
    observations: List[Observation] = Field(default_factory=list)
    model_config = ConfigDict(from_attributes=True)
