"""Quote aggregation domain models."""

from __future__ import annotations

import json
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from quotehub.core.error_handler import QuoteValidationError
from quotehub.modules.quote.coverage import is_known_coverage_type, normalize_coverage_type
from quotehub.modules.quote.errors import ProviderError

PAYMENT_MODES = ("monthly", "quarterly", "semi-annually", "annually")
_ZIP_RE = re.compile(r"^\d{5}$")
_STATE_RE = re.compile(r"^[A-Z]{2}$")


class RequestStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class QuoteCriteria:
    """Normalized quote criteria."""

    coverage_type: str
    coverage_amount: float
    applicant_age: int
    zip_code: str
    state: str | None = None
    county: str | None = None
    gender: str | None = None
    tobacco: bool = False
    date_of_birth: str | None = None
    term_length: int | None = None
    payment_mode: str = "monthly"
    effective_date: str | None = None
    spouse_age: int | None = None
    children_ages: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["children_ages"] = list(self.children_ages)
        return data

    def cache_key(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


@dataclass(slots=True, frozen=True)
class ProviderRef:
    id: str
    display_name: str
    rating: float | None = None


@dataclass(slots=True, frozen=True)
class Quote:
    """Normalized quote from one provider."""

    quote_id: str
    provider: ProviderRef
    type: str
    monthly_premium: float
    coverage_amount: float
    annual_premium: float = 0.0
    term_length: int | None = None
    deductible: float | None = None
    medical_exam_required: bool = False
    conversion_option: bool = False
    features: tuple[str, ...] = ()
    expires_at: str = ""
    application_url: str | None = None
    mock: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "provider": {
                "id": self.provider.id,
                "display_name": self.provider.display_name,
                "rating": self.provider.rating,
            },
            "type": self.type,
            "monthly_premium": round(self.monthly_premium, 2),
            "annual_premium": round(self.annual_premium, 2),
            "coverage_amount": round(self.coverage_amount, 2),
            "term_length": self.term_length,
            "deductible": round(self.deductible, 2) if self.deductible is not None else None,
            "medical_exam_required": self.medical_exam_required,
            "conversion_option": self.conversion_option,
            "features": list(self.features),
            "expires_at": self.expires_at,
            "application_url": self.application_url,
            "mock": self.mock,
        }


@dataclass(slots=True)
class ProviderResult:
    """Outcome of one provider invocation: a quote or a provider error."""

    provider_id: str
    quote: Quote | None = None
    error: ProviderError | None = None
    attempts: int = 0
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.quote is not None and self.error is None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None


@dataclass(slots=True)
class ExternalQuoteRequest:
    """Audit row for one caller-initiated search."""

    request_id: str
    request_data: dict[str, Any]
    providers_requested: list[str]
    user_id: str | None = None
    status: RequestStatus = RequestStatus.PENDING
    response_data: list[dict[str, Any]] | None = None
    providers_responded: list[str] = field(default_factory=list)
    error_message: str | None = None
    id: int | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status != RequestStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "request_data": self.request_data,
            "response_data": self.response_data,
            "status": self.status.value,
            "providers_requested": list(self.providers_requested),
            "providers_responded": list(self.providers_responded),
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class ProviderStats:
    provider_id: str
    successful_requests: int = 0
    failed_requests: int = 0
    total_requests: int = 0
    updated_at: str = ""

    @property
    def success_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return self.successful_requests / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "total_requests": self.total_requests,
            "success_rate": round(self.success_rate, 4),
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class QuoteSearchResult:
    request_id: str
    status: RequestStatus
    quotes: list[Quote]
    providers_requested: list[str]
    providers_responded: list[str]
    errors: dict[str, str] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "quotes": [q.to_dict() for q in self.quotes],
            "providers_requested": list(self.providers_requested),
            "providers_responded": list(self.providers_responded),
            "errors": dict(self.errors),
            "summary": self.summary,
        }


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] not in (None, ""):
            return raw[key]
    return None


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    text = value if isinstance(value, (int, float)) else re.sub(r"[,$\s]", "", str(value))
    try:
        number = float(text)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_int(value: Any) -> int | None:
    number = _to_number(value)
    if number is None or number != int(number):
        return None
    return int(number)


def _age_from_birth_date(text: str, today: date | None = None) -> int | None:
    try:
        born = datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        return None
    today = today or date.today()
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def parse_criteria(raw: dict[str, Any], extra_coverage_types: set[str] | frozenset[str] = frozenset()) -> QuoteCriteria:
    """Validate raw caller input into QuoteCriteria.

    Accepts snake_case or camelCase keys. All problems are collected and
    reported together in one QuoteValidationError.
    """
    if not isinstance(raw, dict):
        raise QuoteValidationError("criteria must be an object", ["criteria"])

    problems: list[str] = []
    invalid: list[str] = []

    coverage_raw = _pick(raw, "coverage_type", "coverageType")
    coverage_type = normalize_coverage_type(coverage_raw)
    if not coverage_type:
        problems.append("coverage_type")
    elif not is_known_coverage_type(coverage_type, extra_coverage_types):
        invalid.append("coverage_type")

    coverage_amount = None
    amount_raw = _pick(raw, "coverage_amount", "coverageAmount")
    if amount_raw is None:
        problems.append("coverage_amount")
    else:
        coverage_amount = _to_number(amount_raw)
        if coverage_amount is None or coverage_amount <= 0:
            invalid.append("coverage_amount")

    date_of_birth = _pick(raw, "date_of_birth", "dateOfBirth")
    age_raw = _pick(raw, "applicant_age", "applicantAge", "age")
    applicant_age = None
    if age_raw is not None:
        applicant_age = _to_int(age_raw)
    elif date_of_birth is not None:
        applicant_age = _age_from_birth_date(str(date_of_birth))
    if age_raw is None and date_of_birth is None:
        problems.append("applicant_age")
    elif applicant_age is None or not 18 <= applicant_age <= 100:
        invalid.append("applicant_age")

    zip_code = _pick(raw, "zip_code", "zipCode", "zip")
    if zip_code is None:
        problems.append("zip_code")
    elif not _ZIP_RE.match(str(zip_code).strip()):
        invalid.append("zip_code")

    state = _pick(raw, "state")
    if state is not None:
        state = str(state).strip().upper()
        if not _STATE_RE.match(state):
            invalid.append("state")

    gender = _pick(raw, "gender")
    if gender is not None:
        gender = str(gender).strip().upper()[:1]
        if gender not in ("M", "F"):
            invalid.append("gender")

    term_length = _pick(raw, "term_length", "termLength")
    if term_length is not None:
        term_length = _to_int(term_length)
        if term_length is None or term_length <= 0:
            invalid.append("term_length")

    payment_mode = str(_pick(raw, "payment_mode", "paymentMode", "payment_frequency", "paymentFrequency") or "monthly")
    payment_mode = payment_mode.strip().lower()
    if payment_mode not in PAYMENT_MODES:
        invalid.append("payment_mode")

    effective_date = _pick(raw, "effective_date", "effectiveDate")
    if effective_date is not None:
        effective_date = str(effective_date).strip()
        try:
            datetime.strptime(effective_date, "%Y-%m-%d")
        except ValueError:
            invalid.append("effective_date")

    spouse_age = _pick(raw, "spouse_age", "spouseAge")
    if spouse_age is None and isinstance(raw.get("spouse"), dict):
        spouse_age = raw["spouse"].get("age")
    if spouse_age is not None:
        spouse_age = _to_int(spouse_age)
        if spouse_age is None or not 18 <= spouse_age <= 100:
            invalid.append("spouse_age")

    children_raw = _pick(raw, "children_ages", "childrenAges")
    if children_raw is None and isinstance(raw.get("children"), list):
        children_raw = [c.get("age") if isinstance(c, dict) else c for c in raw["children"]]
    children_ages: list[int] = []
    if children_raw is not None and not isinstance(children_raw, (list, tuple)):
        invalid.append("children_ages")
        children_raw = None
    for value in children_raw or []:
        age = _to_int(value)
        if age is None or not 0 <= age <= 25:
            invalid.append("children_ages")
            break
        children_ages.append(age)

    if problems or invalid:
        parts = []
        if problems:
            parts.append(f"missing required fields: {', '.join(problems)}")
        if invalid:
            parts.append(f"invalid fields: {', '.join(invalid)}")
        raise QuoteValidationError("; ".join(parts), problems + invalid)

    tobacco = _pick(raw, "tobacco", "smoker")
    return QuoteCriteria(
        coverage_type=coverage_type,
        coverage_amount=float(coverage_amount),
        applicant_age=int(applicant_age),
        zip_code=str(zip_code).strip(),
        state=state,
        county=str(_pick(raw, "county")).strip() if _pick(raw, "county") is not None else None,
        gender=gender,
        tobacco=str(tobacco).strip().lower() in ("1", "true", "yes", "y") if tobacco is not None else False,
        date_of_birth=str(date_of_birth) if date_of_birth is not None else None,
        term_length=term_length,
        payment_mode=payment_mode,
        effective_date=effective_date,
        spouse_age=spouse_age,
        children_ages=tuple(children_ages),
    )
