"""
Request handlers for quotes, CBM calculation records, contact forms and the
newsletter. Every function takes the injected ``Store`` and raises only
``errors.GracelogError`` subclasses.
"""
import logging
import math
import random
import re
import time
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import Store, count_documents, create_document, get_documents, store_errors, to_dict
from errors import DuplicateError, InternalError, NotFoundError, ValidationError
from schemas import (
    SERVICE_TYPES,
    CBMCalculation,
    Contact,
    ContactRequest,
    Newsletter,
    NewsletterRequest,
    QuickQuoteRequest,
    Quote,
    utc_now,
)

logger = logging.getLogger(__name__)

QUOTE_REQUIRED_FIELDS = (
    "firstName", "email", "serviceType", "originCity",
    "originCountry", "destCity", "destCountry", "totalWeight",
)
QUOTE_SEARCH_FIELDS = ("referenceNo", "firstName", "lastName", "email", "company")
QUICK_QUOTE_MESSAGE = "Quick quote request from homepage"

_NUMBER_PREFIX = re.compile(r"\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")
_INTEGER_PREFIX = re.compile(r"\s*([-+]?\d+)")


# --------- Helpers ---------

def _epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_reference(with_suffix: bool = False) -> str:
    """
    ``GRL`` + the last 8 digits of the current epoch milliseconds. Two quotes
    created in the same millisecond collide; the retry path appends three
    random digits, which narrows but does not close that window.
    """
    reference = "GRL" + str(_epoch_ms())[-8:]
    if with_suffix:
        reference += f"{random.randrange(1000):03d}"
    return reference


def parse_number(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Lenient float parse: reads a leading number ("12.5kg" -> 12.5)."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        text = value
    else:
        match = _NUMBER_PREFIX.match(str(value))
        if not match:
            return default
        text = match.group(1)
    try:
        number = float(text)
    except OverflowError:
        return default
    # inf/nan cannot be rendered as JSON on the way back out
    return number if math.isfinite(number) else default


def parse_page_param(value: Any, default: int) -> int:
    """Leading-integer parse for page/limit; missing, unparseable or < 1 gives ``default``."""
    if value is None or isinstance(value, bool):
        return default
    match = _INTEGER_PREFIX.match(str(value))
    if not match:
        return default
    number = int(match.group(1))
    return number if number >= 1 else default


def _text(value: Any) -> str:
    return str(value or "").strip()


def _optional_text(value: Any) -> Optional[str]:
    return _text(value) or None


def _error_messages(exc: PydanticValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"])
        messages.append(f"{field}: {err['msg']}" if field else err["msg"])
    return messages


def _paginate(store: Store, collection_name: str, key: str, query: Dict[str, Any], page: Any, limit: Any) -> Dict[str, Any]:
    page = parse_page_param(page, 1)
    limit = parse_page_param(limit, 10)
    items = get_documents(store, collection_name, query, limit=limit, skip=(page - 1) * limit)
    total = count_documents(store, collection_name, query)
    return {
        key: items,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "total": total,
    }


def _require_name_and_email(name: Optional[str], email: Optional[str]):
    name, email = _text(name), _text(email)
    if not name or not email:
        missing = [field for field, value in (("name", name), ("email", email)) if not value]
        raise ValidationError("Name and email are required", missing_fields=missing)
    return name, email


# --------- Quotes ---------

def _quote_document(payload: Dict[str, Any], reference_no: str) -> Dict[str, Any]:
    total_cbm = payload.get("totalCBM")
    return {
        "referenceNo": reference_no,
        "firstName": _text(payload.get("firstName")),
        "lastName": _text(payload.get("lastName")),
        "email": _text(payload.get("email")),
        "phone": _text(payload.get("phone")),
        "company": _optional_text(payload.get("company")),
        "serviceType": payload.get("serviceType"),
        "incoterms": payload.get("incoterms") or None,
        "originCountry": _text(payload.get("originCountry")),
        "originCity": _text(payload.get("originCity")),
        "destCountry": _text(payload.get("destCountry")),
        "destCity": _text(payload.get("destCity")),
        "totalWeight": parse_number(payload.get("totalWeight"), 0.0),
        "totalCBM": parse_number(total_cbm) if total_cbm else None,
        "additionalServices": payload.get("additionalServices") or {},
        "notes": payload.get("notes") or None,
        "status": "pending",
        "language": payload.get("language") or "tr",
    }


def _is_reference_conflict(exc: DuplicateKeyError) -> bool:
    key_pattern = (exc.details or {}).get("keyPattern")
    return key_pattern is None or "referenceNo" in key_pattern


def create_quote(store: Store, payload: Dict[str, Any]) -> Dict[str, Any]:
    missing = [field for field in QUOTE_REQUIRED_FIELDS if payload.get(field) is None or payload.get(field) == ""]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing_fields=missing)

    if payload["serviceType"] not in SERVICE_TYPES:
        raise ValidationError("Invalid service type. Please choose air, sea or road.")

    try:
        quote = Quote.model_validate(_quote_document(payload, generate_reference()))
    except PydanticValidationError as e:
        raise ValidationError("Data validation error", errors=_error_messages(e)) from e

    with store_errors("Error submitting quote request"):
        collection = store.collection("quote")
        doc = quote.model_dump(by_alias=True)
        try:
            result = collection.insert_one(doc)
        except DuplicateKeyError as e:
            if not _is_reference_conflict(e):
                raise
            logger.warning("Reference %s already taken, retrying", doc["referenceNo"])
            doc.pop("_id", None)
            doc["referenceNo"] = generate_reference(with_suffix=True)
            try:
                result = collection.insert_one(doc)
            except DuplicateKeyError as retry_error:
                logger.error("Retry with reference %s failed: %s", doc["referenceNo"], retry_error)
                raise InternalError("Error submitting quote request", detail=str(e)) from e

    logger.info("Quote saved with reference %s", doc["referenceNo"])
    return {
        "success": True,
        "referenceNo": doc["referenceNo"],
        "id": str(result.inserted_id),
        "message": "Quote request submitted successfully",
    }


def list_quotes(store: Store, page: Any = 1, limit: Any = 10, status: Optional[str] = None, search: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{field: pattern} for field in QUOTE_SEARCH_FIELDS]
    with store_errors("Error fetching quotes"):
        return _paginate(store, "quote", "quotes", query, page, limit)


def update_quote_status(store: Store, quote_id: str, status: str) -> Dict[str, Any]:
    # any listed status is accepted from any other; there is no transition graph
    try:
        oid = ObjectId(quote_id)
    except (InvalidId, TypeError) as e:
        raise ValidationError(f"Invalid quote id '{quote_id}'") from e

    with store_errors("Error updating quote status"):
        doc = store.collection("quote").find_one_and_update(
            {"_id": oid},
            {"$set": {"status": status, "updatedAt": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
    if doc is None:
        raise NotFoundError("Quote", quote_id)
    return {"success": True, "quote": to_dict(doc)}


# --------- CBM calculations ---------

def create_calculation(
    store: Store,
    calculation: CBMCalculation,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """Stores a client-side calculation as submitted, filling request metadata when absent."""
    if not calculation.session_id:
        calculation.session_id = f"anonymous-{_epoch_ms()}"
    if not calculation.ip_address:
        calculation.ip_address = ip_address
    if not calculation.user_agent:
        calculation.user_agent = user_agent

    with store_errors("Error saving calculation"):
        create_document(store, "cbmcalculation", calculation.model_dump(by_alias=True, exclude_none=True))
    return {"success": True, "message": "Calculation saved"}


def list_calculations(store: Store, page: Any = 1, limit: Any = 10) -> Dict[str, Any]:
    with store_errors("Error fetching calculations"):
        return _paginate(store, "cbmcalculation", "calculations", {}, page, limit)


# --------- Contacts ---------

def create_contact(store: Store, request: ContactRequest) -> Dict[str, Any]:
    name, email = _require_name_and_email(request.name, request.email)
    contact = Contact(
        name=name,
        email=email,
        phone=_optional_text(request.phone),
        subject=_optional_text(request.subject),
        message=_optional_text(request.message),
        form_type=request.form_type or "contact",
        status="new",
        language=request.language or "tr",
    )
    with store_errors("Error submitting contact form"):
        create_document(store, "contact", contact)
    return {"success": True, "message": "Contact form submitted successfully"}


def create_quick_quote(store: Store, request: QuickQuoteRequest) -> Dict[str, Any]:
    name, email = _require_name_and_email(request.name, request.email)
    contact = Contact(
        name=name,
        email=email,
        message=QUICK_QUOTE_MESSAGE,
        form_type="quick_quote",
        status="new",
        language=request.language or "tr",
    )
    with store_errors("Error submitting quote request"):
        create_document(store, "contact", contact)
    return {"success": True, "message": "Quote request submitted successfully"}


def list_contacts(store: Store, page: Any = 1, limit: Any = 10, status: Optional[str] = None, form_type: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if form_type:
        query["formType"] = form_type
    with store_errors("Error fetching contacts"):
        return _paginate(store, "contact", "contacts", query, page, limit)


# --------- Newsletter ---------

def subscribe(store: Store, request: NewsletterRequest) -> Dict[str, Any]:
    email = _text(request.email).lower()
    if not email:
        raise ValidationError("Email is required", missing_fields=["email"])

    subscription = Newsletter(email=email, language=request.language or "tr")
    with store_errors("Error subscribing to newsletter"):
        try:
            create_document(store, "newsletter", subscription)
        except DuplicateKeyError as e:
            raise DuplicateError("Email already subscribed") from e
    return {"success": True, "message": "Newsletter subscription successful"}
