import re
from typing import Any, Dict, List, Optional

from library_app.errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# Largest value an SQLite INTEGER column can hold
MAX_INTEGER = 2**63 - 1


class TextValidator:
    """Basic checks for required, length-limited text fields."""

    @staticmethod
    def check(value: Any, max_length: int) -> Optional[str]:
        """Return an error message for ``value`` or None when it is acceptable."""
        if value is None:
            return "This field is required."
        if not isinstance(value, str):
            return "Must be a string."
        text = value.strip()
        if not text:
            return "This field is required."
        if len(text) > max_length:
            return f"Must be at most {max_length} characters."
        return None


class _RecordValidator:
    # field name -> checker returning an error message or None
    fields: Dict[str, Any] = {}

    @classmethod
    def validate(cls, data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        """Validate ``data`` and return the cleaned values.

        With ``partial=True`` only the supplied (non-None) fields are checked,
        which is what PATCH requests need.
        """
        errors: Dict[str, List[str]] = {}
        cleaned: Dict[str, Any] = {}
        for name, checker in cls.fields.items():
            if partial and data.get(name) is None:
                continue
            value = data.get(name)
            message = checker(value)
            if message:
                errors.setdefault(name, []).append(message)
                continue
            cleaned[name] = value.strip() if isinstance(value, str) else value
        if errors:
            raise ValidationError(errors)
        if partial and not cleaned:
            raise ValidationError.single("__all__", "Provide at least one field to update.")
        return cleaned


def _check_stock(value: Any) -> Optional[str]:
    if value is None:
        return "This field is required."
    # bool is an int subclass; True is not a stock level
    if isinstance(value, bool) or not isinstance(value, int):
        return "Must be an integer."
    if value < 0:
        return "Must be zero or greater."
    if value > MAX_INTEGER:
        return f"Must be at most {MAX_INTEGER}."
    return None


def _check_email(value: Any) -> Optional[str]:
    message = TextValidator.check(value, 100)
    if message:
        return message
    if not EMAIL_RE.match(value.strip()):
        return "Must be a valid email address."
    return None


class BookValidator(_RecordValidator):
    fields = {
        "title": lambda v: TextValidator.check(v, 255),
        "author": lambda v: TextValidator.check(v, 255),
        "category": lambda v: TextValidator.check(v, 20),
        "stock": _check_stock,
    }


class MemberValidator(_RecordValidator):
    fields = {
        "name": lambda v: TextValidator.check(v, 100),
        "email": _check_email,
    }


def is_record_id(value: Any) -> bool:
    """True when ``value`` could be the id of a stored row."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_INTEGER
