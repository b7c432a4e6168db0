from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

SENSITIVE_KEYS = {"api_key", "key", "password", "token", "secret", "credentials", "auth"}
REDACTED = "***REDACTED***"


class AttendanceError(Exception):
    """Base exception carrying a structured context for logging."""

    def __init__(self, message: str = "", context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def add_context(self, key: str, value: Any) -> "AttendanceError":
        self.context[key] = value
        return self

    def to_log_string(self) -> str:
        text = f"Exception: {self.message} [{type(self).__name__}]"
        if self.context:
            text += "\nContext: " + json.dumps(self.context, indent=2, default=str)
        return text


class CiviCrmApiError(AttendanceError):
    """Raised when a CiviCRM API call fails."""

    def __init__(
        self,
        message: str,
        entity: str = "",
        action: str = "",
        params: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.entity = entity
        self.action = action
        self.params = sanitize_params(params or {})
        if entity and action:
            message = f"{message} [Entity: {entity}, Action: {action}]"
        super().__init__(message, {"entity": entity, "action": action, "params": self.params})

    @classmethod
    def from_api_error(
        cls,
        message: str,
        entity: str = "",
        action: str = "",
        params: Optional[Mapping[str, Any]] = None,
    ) -> "CiviCrmApiError":
        return cls(message, entity, action, params)


class RemoteUnavailableError(CiviCrmApiError):
    """Raised when the CiviCRM endpoint cannot be reached or is not configured."""


class RemoteTimeoutError(CiviCrmApiError):
    """Raised when a single CiviCRM call exceeds the configured timeout."""


class RecordNotFoundError(CiviCrmApiError):
    """Raised when a single-record lookup finds nothing."""


class ValidationError(AttendanceError):
    """Raised when caller input is rejected before any remote call."""

    def __init__(
        self,
        message: str,
        field: str = "",
        errors: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.errors: Dict[str, Any] = dict(errors or {})
        merged = dict(context or {})
        merged["field"] = field
        merged["errors"] = self.errors
        super().__init__(message, merged)

    def errors_as_string(self) -> str:
        parts = []
        for field, errors in self.errors.items():
            if isinstance(errors, (list, tuple)):
                parts.extend(f"{field}: {error}" for error in errors)
            else:
                parts.append(f"{field}: {errors}")
        return "; ".join(parts)

    @classmethod
    def invalid_field(cls, field: str, error: str, context: Optional[Dict[str, Any]] = None) -> "ValidationError":
        return cls(f'Validation failed for field "{field}": {error}', field, {field: error}, context)

    @classmethod
    def required_field(cls, field: str, context: Optional[Dict[str, Any]] = None) -> "ValidationError":
        return cls(f'Required field "{field}" is missing or empty', field, {field: "This field is required"}, context)

    @classmethod
    def multiple_errors(cls, errors: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> "ValidationError":
        return cls("Multiple validation errors occurred", "", errors, context)


class ParticipantError(AttendanceError):
    """Raised when a participant record cannot be read or written."""

    def __init__(
        self,
        message: str,
        contact_id: int = 0,
        event_id: int = 0,
        status_id: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.contact_id = contact_id
        self.event_id = event_id
        self.status_id = status_id
        merged = dict(context or {})
        merged.update({"contact_id": contact_id, "event_id": event_id, "status_id": status_id})
        super().__init__(message, merged)

    @classmethod
    def creation_failed(cls, contact_id: int, event_id: int, status_id: int, message: str = "") -> "ParticipantError":
        text = "Failed to create participant record"
        if message:
            text += f": {message}"
        return cls(text, contact_id, event_id, status_id)

    @classmethod
    def update_failed(cls, contact_id: int, event_id: int, status_id: int, message: str = "") -> "ParticipantError":
        text = "Failed to update participant record"
        if message:
            text += f": {message}"
        return cls(text, contact_id, event_id, status_id)

    @classmethod
    def invalid_status(cls, contact_id: int, event_id: int, status_id: int) -> "ParticipantError":
        return cls(f"Invalid participant status ID {status_id}", contact_id, event_id, status_id)


class ServiceError(AttendanceError):
    """Raised when an internal service cannot be set up or called."""

    def __init__(
        self,
        message: str,
        service_id: str = "",
        method: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.service_id = service_id
        self.method = method
        merged = dict(context or {})
        merged.update({"service_id": service_id, "method": method})
        super().__init__(message, merged)

    @classmethod
    def method_call_failed(
        cls,
        service_id: str,
        method: str,
        message: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> "ServiceError":
        text = f'Failed to call method "{method}" on service "{service_id}"'
        if message:
            text += f": {message}"
        return cls(text, service_id, method, context)


def sanitize_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in params.items():
        if str(key).lower() in SENSITIVE_KEYS:
            sanitized[key] = REDACTED
        elif isinstance(value, Mapping):
            sanitized[key] = sanitize_params(value)
        else:
            sanitized[key] = value
    return sanitized
