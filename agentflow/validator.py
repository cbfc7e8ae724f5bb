"""
Request validation.

Matching is structural: a format such as `TEXT='''<content>'''` is split into
the literal wrapper around its single placeholder. Inputs carrying the wrapper
are unwrapped; plain text is taken as the content itself. An optional JSON
Schema on the request format is applied to the content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

from .errors import ConfigError, ValidationError
from .models import RequestFormat

_PLACEHOLDER_RE = re.compile(r"<[^<>\s]+>")
_KEY_RE = re.compile(r"^\s*([A-Za-z_]\w*)\s*=")


@dataclass(frozen=True)
class ValidationResult:
    conforms: bool
    reason: Optional[str] = None
    content: Optional[str] = None


def split_format(template: str) -> Tuple[str, str]:
    """Return (prefix, suffix) around the single content placeholder."""
    matches = _PLACEHOLDER_RE.findall(template)
    if len(matches) != 1:
        raise ConfigError(
            f"Request format must contain exactly one placeholder, found {len(matches)}",
            details={"format": template},
        )
    prefix, suffix = template.split(matches[0], 1)
    return prefix, suffix


def check_format(fmt: RequestFormat) -> None:
    """Build-time check of a request format."""
    split_format(fmt.template)
    if fmt.schema is not None:
        try:
            Draft7Validator.check_schema(fmt.schema)
        except SchemaError as exc:
            raise ConfigError(f"Invalid JSON schema in request format: {exc.message}") from exc


def _validate_with_schema(instance: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return None
    return None


def validate_request(value: Any, fmt: RequestFormat) -> ValidationResult:
    """Check `value` against `fmt`; never raises for bad input."""
    if value is None:
        return ValidationResult(False, "input is absent")

    prefix, suffix = split_format(fmt.template)

    # Mapping inputs may carry the content under the format's key, e.g. {"TEXT": "..."}.
    if isinstance(value, dict):
        key_match = _KEY_RE.match(prefix)
        if not key_match or key_match.group(1) not in value:
            return ValidationResult(False, "input mapping does not carry the declared field")
        value = value[key_match.group(1)]

    text = _as_text(value)
    if text is None:
        return ValidationResult(False, f"input of type {type(value).__name__} is not representable as text")

    stripped = text.strip()
    if prefix.strip() and stripped.startswith(prefix.strip()):
        if not stripped.endswith(suffix.strip()) or len(stripped) < len(prefix.strip()) + len(suffix.strip()):
            return ValidationResult(False, "input opens the request wrapper but does not close it")
        content = stripped[len(prefix.strip()) : len(stripped) - len(suffix.strip())]
    else:
        content = text

    if not content.strip():
        return ValidationResult(False, "input content is empty")

    if fmt.schema is not None:
        errors = _validate_with_schema(content, fmt.schema)
        if errors:
            return ValidationResult(False, "; ".join(err["message"] for err in errors))

    return ValidationResult(True, content=content)


def require_conforming(value: Any, fmt: RequestFormat) -> str:
    """Like `validate_request` but raises ValidationError; returns the content."""
    result = validate_request(value, fmt)
    if not result.conforms:
        raise ValidationError(result.reason or "input does not conform", details={"format": fmt.template})
    return result.content or ""
