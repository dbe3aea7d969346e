"""
Database Schemas for the Gracelog logistics site

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercased
class name by convention (e.g., Quote -> "quote"). Fields are snake_case in Python and
camelCase in MongoDB and on the wire.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ServiceType = Literal["air", "sea", "road"]
Incoterm = Literal["EXW", "FCA", "FAS", "FOB", "CPT", "CFR", "CIF", "CIP", "DAP", "DPU", "DDP"]
QuoteStatus = Literal["pending", "processing", "quoted", "accepted", "rejected"]
CalculationType = Literal["single", "multiple"]
FormType = Literal["contact", "quick_quote"]
ContactStatus = Literal["new", "read", "replied", "closed"]
NewsletterStatus = Literal["active", "unsubscribed"]

SERVICE_TYPES = ("air", "sea", "road")


def utc_now() -> datetime:
    # naive UTC, the form pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


class Document(CamelModel):
    created_at: datetime = Field(default_factory=utc_now)


class AdditionalServices(CamelModel):
    fragile: bool = False
    express: bool = False
    insurance: bool = False
    packaging: bool = False


class Quote(Document):
    reference_no: str
    first_name: str = Field(..., min_length=1)
    last_name: str = ""
    email: str = Field(..., min_length=1)
    phone: str = ""
    company: Optional[str] = None
    service_type: ServiceType
    incoterms: Optional[Incoterm] = None
    origin_country: str = Field(..., min_length=1)
    origin_city: str = Field(..., min_length=1)
    dest_country: str = Field(..., min_length=1)
    dest_city: str = Field(..., min_length=1)
    total_weight: float
    total_cbm: Optional[float] = Field(None, alias="totalCBM")
    additional_services: AdditionalServices = Field(default_factory=AdditionalServices)
    notes: Optional[str] = None
    status: QuoteStatus = "pending"
    language: str = "tr"
    updated_at: datetime = Field(default_factory=utc_now)


class QuoteStatusUpdate(CamelModel):
    status: QuoteStatus


class Box(CamelModel):
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    quantity: Optional[float] = None


class CalculationResults(CamelModel):
    total_cbm: Optional[float] = Field(None, alias="totalCBM")
    total_weight: Optional[float] = None
    volumetric_weight: Optional[float] = None
    box_count: Optional[float] = None


class CBMCalculation(Document):
    session_id: Optional[str] = None
    calculation_type: CalculationType
    single_box: Optional[Box] = None
    multiple_boxes: Optional[List[Box]] = None
    results: Optional[CalculationResults] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    language: str = "tr"


class Contact(Document):
    name: str
    email: str
    phone: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    form_type: FormType = "contact"
    status: ContactStatus = "new"
    language: str = "tr"


class Newsletter(Document):
    email: str
    status: NewsletterStatus = "active"
    language: str = "tr"


# --------- Request bodies ---------

class ContactRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    form_type: Optional[FormType] = None
    language: Optional[str] = None


class QuickQuoteRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    language: Optional[str] = None


class NewsletterRequest(CamelModel):
    email: Optional[str] = None
    language: Optional[str] = None
