"""Type checks for values lifted out of request JSON.

Services run these before touching any row, so a payload with the wrong
shape ends as a ValidationError naming the field instead of a TypeError
inside SQLAlchemy.
"""

from uathub.core.exceptions import ValidationError


def choice(value, allowed, field):
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            details={field: f"must be one of {sorted(allowed)}"},
        )
    return value


def optional_text(value, field):
    """Stripped string, or None for None / blank. Non-strings are rejected."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: "invalid"})
    return value.strip() or None


def required_text(value, field):
    text = optional_text(value, field)
    if text is None:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def optional_id(value, field):
    # bool is an int subclass; True is not an id
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer id", details={field: "invalid"})
    return value


def id_list(value, field="ids"):
    if not isinstance(value, list) or any(
        isinstance(v, bool) or not isinstance(v, int) for v in value
    ):
        raise ValidationError(f"{field} must be a list of integer ids", details={field: "invalid"})
    return value
