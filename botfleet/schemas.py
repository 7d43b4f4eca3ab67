from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Personality(_CamelModel):
    tone: str = "friendly"
    custom_tone: str = Field("", alias="customTone")
    additional_languages: list[str] = Field(default_factory=list, alias="additionalLanguages")


class DaySchedule(BaseModel):
    open: bool = False
    start: str = ""
    end: str = ""


class WeeklySchedule(BaseModel):
    monday: DaySchedule = Field(default_factory=DaySchedule)
    tuesday: DaySchedule = Field(default_factory=DaySchedule)
    wednesday: DaySchedule = Field(default_factory=DaySchedule)
    thursday: DaySchedule = Field(default_factory=DaySchedule)
    friday: DaySchedule = Field(default_factory=DaySchedule)
    saturday: DaySchedule = Field(default_factory=DaySchedule)
    sunday: DaySchedule = Field(default_factory=DaySchedule)
    timezone: str = "America/Mexico_City"


class Holiday(BaseModel):
    date: str
    name: str = ""


class ServiceItem(_CamelModel):
    title: str
    description: str = ""
    price_type: str = Field("normal", alias="priceType")
    price: float = 0
    original_price: float = Field(0, alias="originalPrice")
    promo_price: float = Field(0, alias="promoPrice")


class Worker(_CamelModel):
    name: str
    start_time: str = Field("", alias="startTime")
    end_time: str = Field("", alias="endTime")
    days: list[str] = Field(default_factory=list)


class Location(_CamelModel):
    address: str = ""
    number: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = Field("", alias="postalCode")
    between_streets: str = Field("", alias="betweenStreets")


class SocialMedia(BaseModel):
    facebook: str = ""
    instagram: str = ""
    twitter: str = ""
    linkedin: str = ""


class BusinessProfile(_CamelModel):
    """Business configuration document read by the bot at startup."""

    agent_name: str = Field("", alias="agentName")
    business_type: str = Field("", alias="businessType")
    phone_number: str = Field("", alias="phoneNumber")
    personality: Personality = Field(default_factory=Personality)
    schedule: WeeklySchedule = Field(default_factory=WeeklySchedule)
    holidays: list[Holiday] = Field(default_factory=list)
    services: list[ServiceItem] = Field(default_factory=list)
    workers: list[Worker] = Field(default_factory=list)
    location: Location = Field(default_factory=Location)
    social_media: SocialMedia = Field(default_factory=SocialMedia, alias="socialMedia")


class DeploySecrets(BaseModel):
    """Credentials supplied per deploy; never persisted by the fleet."""

    ai_api_key: str = ""
    integration_credentials: bytes | None = None


class DeployRequest(BaseModel):
    ai_api_key: str = ""
    integration_credentials: str | None = None  # base64 service-account JSON


class EnvValueUpdate(BaseModel):
    key: str
    value: str | None = None


class HostOut(BaseModel):
    id: str
    name: str
    purpose: str
    ip_address: str
    status: str
    status_message: str | None = None
    current_agents: int
    max_agents: int
    next_port: int
    base_port: int
    max_port: int
    readiness_attempts: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TenantStateOut(BaseModel):
    tenant_id: str
    state: str
    pairing_code: str = ""
    detail: str = ""


class LogTailOut(BaseModel):
    tenant_id: str
    lines: int
    text: str


class OperationOut(BaseModel):
    tenant_id: str
    status: str
    message: str = ""
