"""
Order Service — Request reasons

Closed reason lists offered by the storefront. "Other" entries require a
free-text description.
"""

from typing import NamedTuple

from .errors import ValidationFailedError

OTHER_CANCELLATION_REASON = "Other (Please specify)"

CANCELLATION_REASONS: tuple[str, ...] = (
    "Product no longer needed",
    "Found a better price elsewhere",
    "Ordered by mistake",
    "Expected delivery time is too long",
    "Changed my mind",
    "Quality concerns based on reviews",
    "Wrong product ordered",
    "Shipping address is incorrect",
    "Payment method issue",
    OTHER_CANCELLATION_REASON,
)

OTHER = "Other"

RETURN_REASONS: dict[str, tuple[str, ...]] = {
    "Damaged or defective": (
        "Arrived broken",
        "Stopped working",
        "Missing parts or accessories",
    ),
    "Wrong item delivered": (
        "Different product",
        "Wrong size",
        "Wrong color",
    ),
    "Not as described": (
        "Specifications differ",
        "Looks different from images",
        "Material differs",
    ),
    "Quality not as expected": (
        "Poor build quality",
        "Used or refurbished item",
        "Expired product",
    ),
    "Size or fit issue": (
        "Too small",
        "Too large",
        "Does not fit",
    ),
    OTHER: (),
}

DETAIL_REQUEST_REASONS: tuple[str, ...] = (
    "Need invoice / billing proof",
    "Warranty / service claim",
    "Bank / payment dispute",
    "Return / replacement reference",
    "Tax / accounting",
    OTHER,
)

MAX_EVIDENCE_IMAGES = 5
MIN_RESTORATION_REASON_LENGTH = 10


class Reason(NamedTuple):
    reason: str
    sub_reason: str | None
    description: str | None

    @property
    def display(self) -> str:
        """What the order shows as its cancellation reason."""
        if self.description and self.reason in (OTHER, OTHER_CANCELLATION_REASON):
            return self.description
        return self.reason


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_description(description: str | None) -> str:
    if not description:
        raise ValidationFailedError(
            "Please describe your reason", {"field": "description"}
        )
    return description


def validate_cancellation_reason(reason: str | None, description: str | None) -> Reason:
    reason, description = _clean(reason), _clean(description)
    if not reason:
        raise ValidationFailedError("Cancellation reason is required", {"field": "reason"})
    if reason not in CANCELLATION_REASONS:
        raise ValidationFailedError(
            f"Unknown cancellation reason: {reason}", {"field": "reason"}
        )
    if reason == OTHER_CANCELLATION_REASON:
        _require_description(description)
    return Reason(reason, None, description)


def validate_return_reason(
    reason: str | None, sub_reason: str | None, description: str | None
) -> Reason:
    reason, sub_reason, description = _clean(reason), _clean(sub_reason), _clean(description)
    if not reason:
        raise ValidationFailedError("Return reason is required", {"field": "reason"})
    if reason not in RETURN_REASONS:
        raise ValidationFailedError(f"Unknown return reason: {reason}", {"field": "reason"})
    if sub_reason is not None and sub_reason not in RETURN_REASONS[reason]:
        raise ValidationFailedError(
            f"'{sub_reason}' is not a sub-reason of '{reason}'", {"field": "sub_reason"}
        )
    if reason == OTHER:
        _require_description(description)
    return Reason(reason, sub_reason, description)


def validate_detail_reason(reason: str | None, description: str | None) -> Reason:
    reason, description = _clean(reason), _clean(description)
    if not reason:
        raise ValidationFailedError("Please select a reason", {"field": "reason"})
    if reason not in DETAIL_REQUEST_REASONS:
        raise ValidationFailedError(
            f"Unknown detail request reason: {reason}", {"field": "reason"}
        )
    if reason == OTHER:
        _require_description(description)
    return Reason(reason, None, description)


def validate_restoration_reason(reason: str | None) -> str:
    reason = _clean(reason)
    if not reason or len(reason) < MIN_RESTORATION_REASON_LENGTH:
        raise ValidationFailedError(
            "Please provide a reason (minimum 10 characters)", {"field": "reason"}
        )
    return reason


def validate_images(images: list[str] | None) -> list[str]:
    cleaned = [url.strip() for url in images or [] if url and url.strip()]
    if len(cleaned) > MAX_EVIDENCE_IMAGES:
        raise ValidationFailedError(
            f"At most {MAX_EVIDENCE_IMAGES} images may be attached", {"field": "images"}
        )
    return cleaned
